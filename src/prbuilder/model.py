from __future__ import annotations

from fnmatch import fnmatch
import os
from pathlib import Path
from typing import List, Optional

import pydantic
import yaml

from prbuilder.errors import ConfigError


class Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        extra="forbid", frozen=True, populate_by_name=True
    )


class Credentials(Model):
    username: str
    password: Optional[str] = None
    password_env: Optional[str] = pydantic.Field(None, alias="password-env")

    @pydantic.model_validator(mode="after")
    def _check_password_source(self) -> "Credentials":
        if self.password is None and self.password_env is None:
            raise ValueError("Either password or password-env must be given")
        return self

    def resolve_password(self) -> str:
        if self.password is not None:
            return self.password
        value = os.environ.get(self.password_env)
        if value is None:
            raise ConfigError(
                f"Environment variable {self.password_env} is not set",
                source=self.password_env,
            )
        return value


class BitbucketSource(Model):
    base_url: str = pydantic.Field(alias="base-url")
    project: str
    repository: str
    credentials: Credentials
    post_build_status: bool = pydantic.Field(False, alias="post-build-status")
    comment_build_status: bool = pydantic.Field(True, alias="comment-build-status")


class TeamCityBuild(Model):
    base_url: str = pydantic.Field(alias="base-url")
    build_config: str = pydantic.Field(alias="build-config")
    credentials: Credentials


class WatchConfig(Model):
    name: str
    source: BitbucketSource
    build: TeamCityBuild

    poll_interval: float = pydantic.Field(60.0, alias="poll-interval", gt=0)
    branch_filter: List[str] = pydantic.Field(
        default_factory=list, alias="branch-filter"
    )
    rebuild_on_failure: bool = pydantic.Field(False, alias="rebuild-on-failure")
    min_retrigger_interval: float = pydantic.Field(
        600.0, alias="min-retrigger-interval", ge=0
    )
    max_backoff: float = pydantic.Field(900.0, alias="max-backoff", gt=0)
    max_concurrent_triggers: int = pydantic.Field(
        4, alias="max-concurrent-triggers", ge=1
    )
    retire_after_missed_polls: int = pydantic.Field(
        2, alias="retire-after-missed-polls", ge=1
    )

    @property
    def repository_id(self) -> str:
        return f"{self.source.project}/{self.source.repository}"

    @property
    def build_config(self) -> str:
        return self.build.build_config

    def branch_matches(self, branch: str) -> bool:
        """
        An empty filter (or a literal ``all``) accepts every branch. Patterns
        are matched against both the full ref and its short name, so
        ``feature/*`` matches ``refs/heads/feature/x``.
        """
        if not self.branch_filter or "all" in self.branch_filter:
            return True
        short = branch
        if short.startswith("refs/heads/"):
            short = short[len("refs/heads/") :]
        return any(
            fnmatch(branch, pattern) or fnmatch(short, pattern)
            for pattern in self.branch_filter
        )


class DaemonConfig(Model):
    watches: List[WatchConfig]

    @pydantic.field_validator("watches")
    @classmethod
    def _unique_names(cls, watches: List[WatchConfig]) -> List[WatchConfig]:
        seen = set()
        for watch in watches:
            if watch.name in seen:
                raise ValueError(f"Duplicate watch name {watch.name}")
            seen.add(watch.name)
        return watches

    def resolve_credentials(self) -> None:
        """Raises ConfigError for the first password that cannot be resolved."""
        for watch in self.watches:
            watch.source.credentials.resolve_password()
            watch.build.credentials.resolve_password()


def load_config(path: str | Path) -> DaemonConfig:
    path = Path(path)
    try:
        with path.open() as fh:
            data = yaml.safe_load(fh)
    except OSError as e:
        raise ConfigError(f"Unable to read {path}: {e}", source=str(path)) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", source=str(path)) from e

    if data is None:
        raise ConfigError(f"{path} is empty", source=str(path))

    try:
        return DaemonConfig.model_validate(data)
    except pydantic.ValidationError as e:
        raise ConfigError(str(e), source=str(path)) from e
