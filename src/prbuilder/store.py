from __future__ import annotations

from datetime import datetime
import logging
from pathlib import Path
from typing import Dict, Optional

import diskcache

from prbuilder.types import BuildInfo, BuildStatus, PullRequestState

logger = logging.getLogger("prbuilder")


class InMemoryStateStore:
    """
    Pull request state for exactly one repository. Each watcher owns its own
    store, so no locking is needed.
    """

    def __init__(self, repository: str):
        self.repository = repository
        self._states: Dict[str, PullRequestState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, pull_request_id: str) -> bool:
        return pull_request_id in self._states

    def snapshot(self) -> Dict[str, PullRequestState]:
        return {key: state.copy() for key, state in self._states.items()}

    def get(self, pull_request_id: str) -> Optional[PullRequestState]:
        state = self._states.get(pull_request_id)
        return state.copy() if state is not None else None

    def ensure(self, pull_request_id: str, now: datetime) -> PullRequestState:
        if pull_request_id not in self._states:
            logger.debug("%s: tracking new PR #%s", self.repository, pull_request_id)
            self._states[pull_request_id] = PullRequestState(
                pull_request_id=pull_request_id, last_updated=now
            )
            self._commit()
        return self._states[pull_request_id].copy()

    def mark_seen(self, pull_request_id: str) -> None:
        state = self._states.get(pull_request_id)
        if state is not None and state.missed_polls != 0:
            state.missed_polls = 0
            self._commit()

    def mark_missing(self, pull_request_id: str, missed_polls: int) -> None:
        state = self._states.get(pull_request_id)
        if state is not None:
            state.missed_polls = missed_polls
            self._commit()

    def record_trigger(
        self, pull_request_id: str, commit: str, build: BuildInfo, now: datetime
    ) -> None:
        state = self._states.get(pull_request_id)
        if state is None:
            return
        state.last_triggered_commit = commit
        state.triggered_commits.add(commit)
        state.last_build_id = build.build_id
        state.last_build_status = BuildStatus.pending
        state.last_build_url = build.web_url
        state.rejected_commit = None
        state.last_updated = now
        self._commit()

    def record_rejection(
        self, pull_request_id: str, commit: str, now: datetime
    ) -> None:
        state = self._states.get(pull_request_id)
        if state is None:
            return
        state.rejected_commit = commit
        state.last_updated = now
        self._commit()

    def record_status(
        self, pull_request_id: str, build: BuildInfo, now: datetime
    ) -> bool:
        """Returns ``True`` if the recorded status changed."""
        state = self._states.get(pull_request_id)
        if state is None:
            return False
        changed = (
            state.last_build_status != build.status
            or state.last_build_id != build.build_id
        )
        if not changed:
            return False
        state.last_build_id = build.build_id
        state.last_build_status = build.status
        if build.web_url is not None:
            state.last_build_url = build.web_url
        state.last_updated = now
        self._commit()
        return True

    def retire(self, pull_request_id: str) -> Optional[PullRequestState]:
        state = self._states.pop(pull_request_id, None)
        if state is not None:
            self._commit()
        return state

    def _commit(self) -> None:
        pass

    def close(self) -> None:
        pass


class DiskStateStore(InMemoryStateStore):
    """
    Same interface as :class:`InMemoryStateStore`, written through to a
    ``diskcache`` directory so the tracked commits survive a restart.
    """

    def __init__(self, repository: str, directory: str | Path):
        super().__init__(repository)
        self.cache = diskcache.Cache(str(directory))
        self.key = f"states:{repository}"
        stored = self.cache.get(self.key)
        if stored:
            logger.info(
                "%s: restored %d PR states from %s",
                repository,
                len(stored),
                directory,
            )
            self._states = dict(stored)

    def _commit(self) -> None:
        self.cache.set(self.key, self._states)

    def close(self) -> None:
        self.cache.close()


def create_store(repository: str, state_dir: Optional[Path] = None):
    if state_dir is None:
        return InMemoryStateStore(repository)
    return DiskStateStore(repository, state_dir)
