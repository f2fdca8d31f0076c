"""
Decision logic for one reconciliation pass.

The engine compares the open pull requests of a repository against the
tracked :class:`PullRequestState` entries and returns one decision per
pull request. It never performs I/O and never mutates its inputs: the
:class:`~prbuilder.watcher.RepositoryWatcher` applies the decisions.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Mapping, Sequence, Set

from prbuilder.model import WatchConfig
from prbuilder.types import (
    Action,
    BuildStatus,
    Decision,
    PullRequest,
    PullRequestState,
)

REASON_FILTERED = "filtered"
REASON_DUPLICATE = "duplicate"
REASON_FIRST_SIGHTING = "first-sighting"
REASON_NEW_COMMIT = "new-commit"
REASON_PREVIOUSLY_BUILT = "previously-built"
REASON_REBUILD_FAILED = "rebuild-failed"
REASON_REBUILD_COOLDOWN = "rebuild-cooldown"
REASON_REJECTED = "rejected"
REASON_UP_TO_DATE = "up-to-date"
REASON_GRACE = "grace"
REASON_CLOSED = "closed"


class ReconciliationEngine:
    def __init__(self, config: WatchConfig):
        self.config = config

    def reconcile(
        self,
        open_prs: Sequence[PullRequest],
        states: Mapping[str, PullRequestState],
        now: datetime,
    ) -> List[Decision]:
        decisions: List[Decision] = []
        seen: Set[str] = set()

        for pr in open_prs:
            if not self.config.branch_matches(pr.source_branch):
                decisions.append(Decision(pr.id, Action.noop, REASON_FILTERED, pr))
                continue
            if pr.id in seen:
                decisions.append(Decision(pr.id, Action.noop, REASON_DUPLICATE, pr))
                continue
            seen.add(pr.id)
            decisions.append(self._decide_open(pr, states.get(pr.id), now))

        listed = {pr.id for pr in open_prs}
        for pr_id, state in states.items():
            if pr_id in listed:
                continue
            decisions.append(self._decide_missing(state))

        return decisions

    def _decide_open(
        self, pr: PullRequest, state: PullRequestState | None, now: datetime
    ) -> Decision:
        if state is not None and state.rejected_commit == pr.head_commit:
            # suppressed until the head commit moves on
            return Decision(pr.id, Action.noop, REASON_REJECTED, pr)

        if state is None or state.last_triggered_commit is None:
            return Decision(pr.id, Action.trigger, REASON_FIRST_SIGHTING, pr)

        if state.last_triggered_commit != pr.head_commit:
            if pr.head_commit in state.triggered_commits:
                # head moved back to a commit that was already built
                return Decision(pr.id, Action.noop, REASON_PREVIOUSLY_BUILT, pr)
            return Decision(pr.id, Action.trigger, REASON_NEW_COMMIT, pr)

        if (
            self.config.rebuild_on_failure
            and state.last_build_status == BuildStatus.failed
        ):
            cooldown = timedelta(seconds=self.config.min_retrigger_interval)
            if now - state.last_updated >= cooldown:
                return Decision(pr.id, Action.trigger, REASON_REBUILD_FAILED, pr)
            return Decision(pr.id, Action.noop, REASON_REBUILD_COOLDOWN, pr)

        return Decision(pr.id, Action.noop, REASON_UP_TO_DATE, pr)

    def _decide_missing(self, state: PullRequestState) -> Decision:
        missed = state.missed_polls + 1
        if missed >= self.config.retire_after_missed_polls:
            return Decision(
                state.pull_request_id, Action.retire, REASON_CLOSED, missed_polls=missed
            )
        return Decision(
            state.pull_request_id, Action.noop, REASON_GRACE, missed_polls=missed
        )
