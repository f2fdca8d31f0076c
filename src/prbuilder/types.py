from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BuildStatus(str, Enum):
    unknown = "unknown"
    pending = "pending"
    running = "running"
    success = "success"
    failed = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (BuildStatus.success, BuildStatus.failed)


class Action(str, Enum):
    trigger = "trigger"
    noop = "noop"
    retire = "retire"


class WatcherState(str, Enum):
    idle = "idle"
    polling = "polling"
    reconciling = "reconciling"
    triggering = "triggering"
    backoff = "backoff"
    halted = "halted"


@dataclass(frozen=True)
class PullRequest:
    id: str
    head_commit: str
    source_branch: str
    target_branch: str
    title: str | None = None
    web_url: str | None = None
    author: str | None = None

    def __str__(self) -> str:
        return f"PR(#{self.id}, {self.head_commit[:10]})"


@dataclass(frozen=True)
class BuildInfo:
    build_id: str
    status: BuildStatus
    web_url: str | None = None
    status_text: str | None = None
    commit: str | None = None


@dataclass
class PullRequestState:
    pull_request_id: str
    last_triggered_commit: str | None = None
    last_build_id: str | None = None
    last_build_status: BuildStatus = BuildStatus.unknown
    last_build_url: str | None = None
    last_updated: datetime = field(default_factory=utcnow)
    rejected_commit: str | None = None
    missed_polls: int = 0
    triggered_commits: Set[str] = field(default_factory=set)

    @property
    def has_build_in_flight(self) -> bool:
        return (
            self.last_triggered_commit is not None
            and not self.last_build_status.is_finished
        )

    def copy(self) -> PullRequestState:
        return replace(self, triggered_commits=set(self.triggered_commits))


@dataclass(frozen=True)
class Decision:
    pull_request_id: str
    action: Action
    reason: str
    pull_request: PullRequest | None = None
    missed_polls: int = 0

    @property
    def commit(self) -> str | None:
        if self.pull_request is None:
            return None
        return self.pull_request.head_commit
