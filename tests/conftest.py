from datetime import datetime, timedelta, timezone

import pytest

from prbuilder.model import WatchConfig
from prbuilder.types import PullRequest


def make_config(**overrides) -> WatchConfig:
    data = {
        "name": "proj/repo",
        "source": {
            "base-url": "https://bitbucket.example.com",
            "project": "PROJ",
            "repository": "repo",
            "credentials": {"username": "bot", "password": "secret"},
        },
        "build": {
            "base-url": "https://teamcity.example.com",
            "build-config": "Proj_PullRequests",
            "credentials": {"username": "bot", "password": "secret"},
        },
    }
    data.update(overrides)
    return WatchConfig.model_validate(data)


def make_pr(id: str = "42", commit: str = "aaa", branch: str = "refs/heads/feature/x"):
    return PullRequest(
        id=id,
        head_commit=commit,
        source_branch=branch,
        target_branch="refs/heads/main",
    )


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()
