from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Callable, Dict, List, Optional, Sequence

from prbuilder.errors import (
    AuthError,
    NotFoundError,
    ProviderError,
    RejectedError,
    TransientError,
    TransientFetchError,
)
from prbuilder.events import DecisionEvent, EventBroadcaster
from prbuilder.metric import (
    decision_counter,
    error_counter,
    poll_counter,
    report_counter,
    retire_counter,
    set_watcher_state,
    status_refresh_counter,
    tracked_prs,
    trigger_counter,
)
from prbuilder.model import WatchConfig
from prbuilder.providers import (
    BuildProvider,
    BuildStatusReporter,
    SourceControlProvider,
)
from prbuilder.reconcile import (
    REASON_DUPLICATE,
    REASON_FILTERED,
    ReconciliationEngine,
)
from prbuilder.store import InMemoryStateStore
from prbuilder.types import (
    Action,
    BuildInfo,
    Decision,
    PullRequest,
    WatcherState,
    utcnow,
)

logger = logging.getLogger("prbuilder")


class Backoff:
    """
    Exponential delay starting at ``base`` and doubling per consecutive
    failure, never exceeding ``cap``.
    """

    def __init__(self, base: float, cap: float, factor: float = 2.0):
        self.base = base
        self.cap = max(cap, base)
        self.factor = factor
        self.failures = 0

    @property
    def delay(self) -> float:
        delay = self.base
        for _ in range(self.failures - 1):
            delay *= self.factor
            if delay >= self.cap:
                return self.cap
        return min(self.cap, delay)

    def failure(self) -> float:
        self.failures += 1
        return self.delay

    def reset(self) -> float:
        self.failures = 0
        return self.base


@dataclass
class PassResult:
    repository: str
    state: WatcherState
    delay: Optional[float]
    decisions: List[Decision] = field(default_factory=list)
    triggered: int = 0
    rejected: int = 0
    failed: int = 0
    retired: int = 0
    error: Optional[str] = None

    @property
    def triggers(self) -> List[Decision]:
        return [d for d in self.decisions if d.action == Action.trigger]


class RepositoryWatcher:
    def __init__(
        self,
        config: WatchConfig,
        source: SourceControlProvider,
        builds: BuildProvider,
        *,
        store: Optional[InMemoryStateStore] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        reporter: Optional[BuildStatusReporter] = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.repository = config.name
        self.source = source
        self.builds = builds
        self.store = store if store is not None else InMemoryStateStore(config.name)
        self.broadcaster = broadcaster if broadcaster is not None else EventBroadcaster()
        if reporter is None and isinstance(source, BuildStatusReporter):
            reporter = source
        self.reporter = reporter
        self.dry_run = dry_run
        self.clock = clock

        self.engine = ReconciliationEngine(config)
        self.backoff = Backoff(config.poll_interval, config.max_backoff)
        self.halt_reason: Optional[str] = None
        self.last_pass: Optional[PassResult] = None
        self.state = WatcherState.idle
        set_watcher_state(self.repository, self.state)

    def __str__(self) -> str:
        return f"Watcher({self.repository})"

    @property
    def halted(self) -> bool:
        return self.state == WatcherState.halted

    def _set_state(self, state: WatcherState) -> None:
        logger.debug("%s: %s -> %s", self, self.state.value, state.value)
        self.state = state
        set_watcher_state(self.repository, state)

    async def _publish(self, decision: str, outcome: str, **kwargs) -> None:
        await self.broadcaster.publish(
            DecisionEvent(
                repository=self.repository,
                decision=decision,
                outcome=outcome,
                **kwargs,
            )
        )

    async def run_once(self) -> PassResult:
        """
        One poll, reconcile and trigger pass. Provider errors never escape;
        the returned result carries the delay before the next pass, or
        ``None`` once the watcher is halted.
        """
        if self.halted:
            return PassResult(
                self.repository, self.state, None, error=self.halt_reason
            )

        self._set_state(WatcherState.polling)
        try:
            prs = await self.source.list_open_pull_requests(self.config.repository_id)
        except TransientFetchError as e:
            return await self._enter_backoff(e)
        except (AuthError, NotFoundError) as e:
            return await self._halt(e)
        poll_counter.labels(repository=self.repository, result="ok").inc()

        refresh_failures = await self._refresh_statuses(prs)

        self._set_state(WatcherState.reconciling)
        now = self.clock()
        decisions = self.engine.reconcile(prs, self.store.snapshot(), now)
        result = PassResult(self.repository, WatcherState.idle, None, decisions)
        for decision in decisions:
            decision_counter.labels(
                repository=self.repository,
                action=decision.action.value,
                reason=decision.reason,
            ).inc()
        result.retired = await self._apply_bookkeeping(decisions, now)

        self._set_state(WatcherState.triggering)
        outcomes = await self._trigger_all(result.triggers)
        result.triggered = outcomes.count("triggered")
        result.rejected = outcomes.count("rejected")
        result.failed = outcomes.count("failed")

        if result.failed or refresh_failures:
            result.delay = self.backoff.failure()
            result.state = WatcherState.backoff
        else:
            result.delay = self.backoff.reset()

        tracked_prs.labels(repository=self.repository).set(len(self.store))
        self._set_state(result.state)
        self.last_pass = result
        logger.info(
            "%s: pass done prs=%d triggered=%d rejected=%d failed=%d retired=%d next=%.0fs",
            self,
            len(prs),
            result.triggered,
            result.rejected,
            result.failed,
            result.retired,
            result.delay,
        )
        return result

    def on_unexpected_error(self, exc: BaseException) -> float:
        error_counter.labels(context="watcher_pass").inc()
        self._set_state(WatcherState.backoff)
        delay = self.backoff.failure()
        self.last_pass = PassResult(
            self.repository, self.state, delay, error=repr(exc)
        )
        return delay

    async def _enter_backoff(self, exc: TransientError) -> PassResult:
        poll_counter.labels(repository=self.repository, result="transient").inc()
        self._set_state(WatcherState.backoff)
        delay = self.backoff.failure()
        logger.warning(
            "%s: listing pull requests failed (%s), retrying in %.0fs",
            self,
            exc,
            delay,
        )
        await self._publish("poll", "backoff", detail=str(exc))
        self.last_pass = PassResult(self.repository, self.state, delay, error=str(exc))
        return self.last_pass

    async def _halt(self, exc: ProviderError) -> PassResult:
        poll_counter.labels(repository=self.repository, result="fatal").inc()
        error_counter.labels(context="watcher_halted").inc()
        self.halt_reason = f"{type(exc).__name__}: {exc}"
        self._set_state(WatcherState.halted)
        logger.error("%s: halted, %s", self, self.halt_reason)
        await self._publish("poll", "halted", detail=self.halt_reason)
        self.last_pass = PassResult(
            self.repository, self.state, None, error=self.halt_reason
        )
        return self.last_pass

    async def _refresh_statuses(self, prs: Sequence[PullRequest]) -> int:
        states = self.store.snapshot()
        candidates: Dict[str, PullRequest] = {}
        for pr in prs:
            state = states.get(pr.id)
            if (
                pr.id not in candidates
                and state is not None
                and state.has_build_in_flight
                and state.last_triggered_commit == pr.head_commit
            ):
                candidates[pr.id] = pr
        if not candidates:
            return 0

        semaphore = asyncio.Semaphore(self.config.max_concurrent_triggers)

        async def refresh(pr: PullRequest) -> bool:
            async with semaphore:
                try:
                    info = await self.builds.get_latest_build_status(
                        self.config.build_config, pr.head_commit
                    )
                except ProviderError as e:
                    status_refresh_counter.labels(
                        repository=self.repository, result="error"
                    ).inc()
                    logger.warning("%s: status refresh of %s failed: %s", self, pr, e)
                    return False
            if info is None:
                status_refresh_counter.labels(
                    repository=self.repository, result="none"
                ).inc()
                return True
            status_refresh_counter.labels(repository=self.repository, result="ok").inc()
            if self.store.record_status(pr.id, info, self.clock()):
                await self._publish(
                    "status",
                    info.status.value,
                    pull_request_id=pr.id,
                    commit=pr.head_commit,
                    build_id=info.build_id,
                    detail=info.status_text,
                )
                await self._report(pr, info)
            return True

        results = await asyncio.gather(*(refresh(pr) for pr in candidates.values()))
        return results.count(False)

    async def _apply_bookkeeping(self, decisions: Sequence[Decision], now: datetime) -> int:
        retired = 0
        for decision in decisions:
            if decision.pull_request is not None:
                if decision.reason in (REASON_FILTERED, REASON_DUPLICATE):
                    continue
                self.store.ensure(decision.pull_request_id, now)
                self.store.mark_seen(decision.pull_request_id)
            elif decision.action == Action.retire:
                state = self.store.retire(decision.pull_request_id)
                retired += 1
                retire_counter.labels(repository=self.repository).inc()
                await self._publish(
                    "retire",
                    "retired",
                    pull_request_id=decision.pull_request_id,
                    commit=state.last_triggered_commit if state else None,
                    detail=f"absent for {decision.missed_polls} polls",
                )
            else:
                logger.info(
                    "%s: PR #%s missing from listing (%d), keeping state",
                    self,
                    decision.pull_request_id,
                    decision.missed_polls,
                )
                self.store.mark_missing(decision.pull_request_id, decision.missed_polls)
        return retired

    async def _trigger_all(self, decisions: Sequence[Decision]) -> List[str]:
        if not decisions:
            return []
        semaphore = asyncio.Semaphore(self.config.max_concurrent_triggers)
        results = await asyncio.gather(
            *(self._trigger(decision, semaphore) for decision in decisions),
            return_exceptions=True,
        )
        outcomes = []
        for decision, result in zip(decisions, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                error_counter.labels(context="trigger").inc()
                logger.error(
                    "%s: unexpected error triggering PR #%s",
                    self,
                    decision.pull_request_id,
                    exc_info=result,
                )
                outcomes.append("failed")
            else:
                outcomes.append(result)
        return outcomes

    async def _trigger(self, decision: Decision, semaphore: asyncio.Semaphore) -> str:
        pr = decision.pull_request
        assert pr is not None

        if self.dry_run:
            logger.info("%s: DRY RUN, would trigger %s (%s)", self, pr, decision.reason)
            await self._publish(
                "trigger",
                "dry-run",
                pull_request_id=pr.id,
                commit=pr.head_commit,
                detail=decision.reason,
            )
            return "skipped"

        async with semaphore:
            try:
                build = await self.builds.trigger_build(
                    self.config.build_config, pr.source_branch, pr.head_commit
                )
            except RejectedError as e:
                self.store.record_rejection(pr.id, pr.head_commit, self.clock())
                trigger_counter.labels(repository=self.repository, outcome="rejected").inc()
                await self._publish(
                    "trigger",
                    "rejected",
                    pull_request_id=pr.id,
                    commit=pr.head_commit,
                    detail=str(e),
                )
                return "rejected"
            except ProviderError as e:
                trigger_counter.labels(repository=self.repository, outcome="failed").inc()
                await self._publish(
                    "trigger",
                    "failed",
                    pull_request_id=pr.id,
                    commit=pr.head_commit,
                    detail=str(e),
                )
                return "failed"

        self.store.record_trigger(pr.id, pr.head_commit, build, self.clock())
        trigger_counter.labels(repository=self.repository, outcome="triggered").inc()
        await self._publish(
            "trigger",
            "triggered",
            pull_request_id=pr.id,
            commit=pr.head_commit,
            build_id=build.build_id,
            detail=decision.reason,
        )
        await self._report(pr, build)
        return "triggered"

    async def _report(self, pr: PullRequest, build: BuildInfo) -> None:
        if self.reporter is None:
            return
        try:
            await self.reporter.report_build_status(pr, build)
        except Exception as e:  # noqa: BLE001
            report_counter.labels(repository=self.repository, result="error").inc()
            logger.warning(
                "%s: reporting %s on %s failed: %s", self, build.status.value, pr, e
            )
            return
        report_counter.labels(repository=self.repository, result="ok").inc()

    def close(self) -> None:
        self.store.close()

    def describe(self) -> Dict[str, object]:
        return {
            "repository": self.repository,
            "source": self.config.repository_id,
            "build_config": self.config.build_config,
            "state": self.state.value,
            "halt_reason": self.halt_reason,
            "backoff_failures": self.backoff.failures,
            "pull_requests": [
                {
                    "id": state.pull_request_id,
                    "last_triggered_commit": state.last_triggered_commit,
                    "last_build_id": state.last_build_id,
                    "last_build_status": state.last_build_status.value,
                    "last_build_url": state.last_build_url,
                    "last_updated": state.last_updated.isoformat(),
                    "rejected_commit": state.rejected_commit,
                    "missed_polls": state.missed_polls,
                    "triggered_commits": sorted(state.triggered_commits),
                }
                for state in self.store.snapshot().values()
            ],
        }
