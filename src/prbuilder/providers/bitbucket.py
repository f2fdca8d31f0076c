from __future__ import annotations

import logging
from typing import AsyncIterator, Dict, List, Optional

import aiohttp
from aiolimiter import AsyncLimiter
import emoji
import pydantic

from prbuilder.errors import RejectedError, TransientFetchError
from prbuilder.model import BitbucketSource
from prbuilder.providers.http import JsonClient
from prbuilder.types import BuildInfo, BuildStatus, PullRequest

logger = logging.getLogger("prbuilder")

PAGE_LIMIT = 100


class Model(pydantic.BaseModel):
    pass


class Link(Model):
    href: str
    name: Optional[str] = None


class User(Model):
    name: str
    displayName: Optional[str] = None
    emailAddress: Optional[str] = None


class Participant(Model):
    user: User


class GitReference(Model):
    id: str
    displayId: str
    latestCommit: str


class BitbucketPullRequest(Model):
    id: int
    title: str = ""
    state: str = "OPEN"
    fromRef: GitReference
    toRef: GitReference
    author: Optional[Participant] = None
    links: Dict[str, List[Link]] = pydantic.Field(default_factory=dict)

    def to_pull_request(self) -> PullRequest:
        web_url = None
        if self.links.get("self"):
            web_url = self.links["self"][0].href
        author = None
        if self.author is not None:
            author = self.author.user.displayName or self.author.user.name
        return PullRequest(
            id=str(self.id),
            head_commit=self.fromRef.latestCommit,
            source_branch=self.fromRef.id,
            target_branch=self.toRef.id,
            title=self.title,
            web_url=web_url,
            author=author,
        )


class Comment(Model):
    id: int
    version: int
    text: str


class Activity(Model):
    id: int
    action: str
    user: User
    comment: Optional[Comment] = None


def make_queued_comment(build_url: str, commit: str) -> str:
    return emoji.emojize(
        f":hourglass_flowing_sand: [Build]({build_url}) for commit {commit} queued",
        language="alias",
    )


def make_running_comment(build_url: str, commit: str) -> str:
    return emoji.emojize(
        f":hourglass_flowing_sand: [Build]({build_url}) for commit {commit} is running",
        language="alias",
    )


def make_success_comment(build_url: str, commit: str, message: str) -> str:
    return emoji.emojize(
        f":heavy_check_mark: [Build]({build_url}) for commit {commit} "
        f"is **successful**: {message}",
        language="alias",
    )


def make_failure_comment(build_url: str, commit: str, message: str) -> str:
    return emoji.emojize(
        f":x: [Build]({build_url}) for commit {commit} has **failed**: {message}",
        language="alias",
    )


def status_comment(pr: PullRequest, build: BuildInfo) -> str:
    url = build.web_url or ""
    message = build.status_text or ""
    if build.status == BuildStatus.success:
        return make_success_comment(url, pr.head_commit, message)
    if build.status == BuildStatus.failed:
        return make_failure_comment(url, pr.head_commit, message)
    if build.status == BuildStatus.running:
        return make_running_comment(url, pr.head_commit)
    return make_queued_comment(url, pr.head_commit)


def build_state(status: BuildStatus) -> str:
    if status == BuildStatus.success:
        return "SUCCESSFUL"
    if status == BuildStatus.failed:
        return "FAILED"
    return "INPROGRESS"


class BitbucketProvider:
    """
    Bitbucket Server adapter. Implements both SourceControlProvider and
    BuildStatusReporter.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        source: BitbucketSource,
        *,
        limiter: Optional[AsyncLimiter] = None,
        timeout: float = 30.0,
    ):
        self.source = source
        self.username = source.credentials.username
        self.client = JsonClient(
            session,
            source.base_url,
            provider="bitbucket",
            username=self.username,
            password=source.credentials.resolve_password(),
            limiter=limiter,
            timeout=timeout,
        )

    def _repo_path(self, repository: str) -> str:
        project, _, slug = repository.partition("/")
        if not slug:
            project, slug = self.source.project, self.source.repository
        return f"/rest/api/latest/projects/{project}/repos/{slug}"

    async def _paged(
        self, path: str, params: Optional[Dict[str, str]] = None
    ) -> AsyncIterator[dict]:
        start = 0
        while True:
            query = {**(params or {}), "start": str(start), "limit": str(PAGE_LIMIT)}
            page = await self.client.request(
                "GET",
                path,
                params=query,
                transient=TransientFetchError,
                client_error=TransientFetchError,
            )
            for item in page.get("values", []):
                yield item
            if page.get("isLastPage", True):
                return
            next_start = page.get("nextPageStart")
            if next_start is None or next_start <= start:
                return
            start = next_start

    async def list_open_pull_requests(self, repository: str) -> List[PullRequest]:
        path = f"{self._repo_path(repository)}/pull-requests"
        prs = []
        async for item in self._paged(path, {"state": "OPEN"}):
            try:
                prs.append(BitbucketPullRequest.model_validate(item).to_pull_request())
            except pydantic.ValidationError as e:
                raise TransientFetchError(
                    f"Malformed pull request in listing of {repository}: {e}"
                ) from e
        logger.debug("%s: %d open pull requests", repository, len(prs))
        return prs

    async def get_comments(self, pr: PullRequest) -> List[Comment]:
        path = f"{self._repo_path(self.repository_id)}/pull-requests/{pr.id}/activities"
        comments = []
        async for item in self._paged(path, {"fromType": "COMMENT"}):
            activity = Activity.model_validate(item)
            if activity.comment is None or activity.user.name != self.username:
                continue
            comments.append(activity.comment)
        return comments

    async def post_comment(self, pr: PullRequest, text: str) -> Comment:
        path = f"{self._repo_path(self.repository_id)}/pull-requests/{pr.id}/comments"
        data = await self.client.request(
            "POST", path, json={"text": text}, transient=TransientFetchError
        )
        return Comment.model_validate(data)

    async def edit_comment(self, pr: PullRequest, comment: Comment, text: str) -> Comment:
        path = (
            f"{self._repo_path(self.repository_id)}"
            f"/pull-requests/{pr.id}/comments/{comment.id}"
        )
        data = await self.client.request(
            "PUT",
            path,
            json={"text": text, "version": comment.version},
            transient=TransientFetchError,
        )
        return Comment.model_validate(data)

    async def update_status_comment(self, pr: PullRequest, build: BuildInfo) -> str:
        text = status_comment(pr, build)
        comments = await self.get_comments(pr)
        if any(comment.text == text for comment in comments):
            return "existing"
        for comment in comments:
            if pr.head_commit in comment.text:
                await self.edit_comment(pr, comment, text)
                return "updated"
        await self.post_comment(pr, text)
        return "posted"

    async def post_build_status(self, pr: PullRequest, build: BuildInfo) -> None:
        payload = {
            "state": build_state(build.status),
            "key": build.build_id,
            "name": f"{self.source.repository} PR #{pr.id}",
            "url": build.web_url or "",
            "description": build.status_text or "",
        }
        await self.client.request(
            "POST",
            f"/rest/build-status/1.0/commits/{pr.head_commit}",
            json=payload,
            transient=TransientFetchError,
            client_error=RejectedError,
            expect_body=False,
        )

    async def report_build_status(self, pull_request: PullRequest, build: BuildInfo) -> None:
        if self.source.comment_build_status:
            result = await self.update_status_comment(pull_request, build)
            logger.debug("Status comment on %s: %s", pull_request, result)
        if self.source.post_build_status:
            await self.post_build_status(pull_request, build)

    @property
    def repository_id(self) -> str:
        return f"{self.source.project}/{self.source.repository}"
