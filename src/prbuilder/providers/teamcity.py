from __future__ import annotations

import logging
from typing import List, Literal, Optional

import aiohttp
from aiolimiter import AsyncLimiter
import pydantic

from prbuilder.errors import (
    AuthError,
    NotFoundError,
    RejectedError,
    TransientFetchError,
    TransientTriggerError,
)
from prbuilder.model import TeamCityBuild
from prbuilder.providers.http import JsonClient
from prbuilder.types import BuildInfo, BuildStatus

logger = logging.getLogger("prbuilder")

BUILD_FIELDS = "count,build(id,number,status,state,webUrl,statusText)"
UNKNOWN_BUILD_ID = "unknown"


class Build(pydantic.BaseModel):
    id: int
    number: Optional[str] = None
    status: Optional[str] = None
    state: Literal["queued", "running", "finished", "deleted", "unknown"] = "unknown"
    webUrl: Optional[str] = None
    statusText: Optional[str] = None

    def to_build_info(self, commit: Optional[str] = None) -> BuildInfo:
        if self.state == "queued":
            status = BuildStatus.pending
        elif self.state == "running":
            status = BuildStatus.running
        elif self.state == "finished":
            status = (
                BuildStatus.success if self.status == "SUCCESS" else BuildStatus.failed
            )
        else:
            status = BuildStatus.unknown
        return BuildInfo(
            build_id=str(self.id),
            status=status,
            web_url=self.webUrl,
            status_text=self.statusText,
            commit=commit,
        )


class BuildList(pydantic.BaseModel):
    count: int = 0
    build: List[Build] = pydantic.Field(default_factory=list)


def build_locator(build_config: str, commit: str) -> str:
    return (
        f"buildType:(id:{build_config}),revision:(version:{commit}),"
        "branch:default:any,state:any,count:1"
    )


class TeamCityProvider:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        build: TeamCityBuild,
        *,
        limiter: Optional[AsyncLimiter] = None,
        timeout: float = 30.0,
    ):
        self.build = build
        self.client = JsonClient(
            session,
            build.base_url,
            provider="teamcity",
            username=build.credentials.username,
            password=build.credentials.resolve_password(),
            limiter=limiter,
            timeout=timeout,
        )

    async def get_latest_build_status(
        self, build_config: str, commit: str
    ) -> Optional[BuildInfo]:
        data = await self.client.request(
            "GET",
            "/app/rest/builds",
            params={
                "locator": build_locator(build_config, commit),
                "fields": BUILD_FIELDS,
            },
            transient=TransientFetchError,
        )
        try:
            builds = BuildList.model_validate(data or {})
        except pydantic.ValidationError as e:
            raise TransientFetchError(f"Malformed build list: {e}") from e
        if not builds.build:
            return None
        return builds.build[0].to_build_info(commit)

    async def trigger_build(
        self, build_config: str, branch: str, commit: str
    ) -> BuildInfo:
        payload = {
            "buildType": {"id": build_config},
            "branchName": branch,
            "revisions": {
                "revision": [{"version": commit, "vcsBranchName": branch}]
            },
        }
        try:
            data = await self.client.request(
                "POST",
                "/app/rest/buildQueue",
                json=payload,
                transient=TransientTriggerError,
            )
        except (AuthError, NotFoundError) as e:
            raise RejectedError(str(e), status_code=e.status_code) from e

        try:
            queued = Build.model_validate(data)
        except pydantic.ValidationError as e:
            # the queue accepted the request, so the build exists; the status
            # refresh resolves its id by commit
            logger.warning(
                "Queued %s build for %s, but the response was malformed: %s",
                build_config,
                commit,
                e,
            )
            return BuildInfo(
                build_id=UNKNOWN_BUILD_ID, status=BuildStatus.pending, commit=commit
            )
        logger.debug("Queued %s build %s for %s", build_config, queued.id, commit)
        info = queued.to_build_info(commit)
        if info.status == BuildStatus.unknown:
            info = BuildInfo(
                build_id=info.build_id,
                status=BuildStatus.pending,
                web_url=info.web_url,
                commit=commit,
            )
        return info
