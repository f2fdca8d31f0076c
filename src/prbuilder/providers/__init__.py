from __future__ import annotations

from typing import List, Optional, Protocol, runtime_checkable

from prbuilder.types import BuildInfo, PullRequest


@runtime_checkable
class SourceControlProvider(Protocol):
    async def list_open_pull_requests(self, repository: str) -> List[PullRequest]:
        """
        Raises TransientFetchError, AuthError or NotFoundError.
        """
        ...


@runtime_checkable
class BuildProvider(Protocol):
    async def get_latest_build_status(
        self, build_config: str, commit: str
    ) -> Optional[BuildInfo]:
        ...

    async def trigger_build(
        self, build_config: str, branch: str, commit: str
    ) -> BuildInfo:
        """
        Raises TransientTriggerError or RejectedError.
        """
        ...


@runtime_checkable
class BuildStatusReporter(Protocol):
    async def report_build_status(
        self, pull_request: PullRequest, build: BuildInfo
    ) -> None:
        ...


__all__ = ["BuildProvider", "BuildStatusReporter", "SourceControlProvider"]
