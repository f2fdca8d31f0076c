import textwrap

import pydantic
import pytest

from conftest import make_config

from prbuilder.errors import ConfigError
from prbuilder.model import Credentials, load_config


CONFIG_YAML = textwrap.dedent(
    """
    watches:
      - name: core
        poll-interval: 30
        branch-filter: ["feature/*", "bugfix/*"]
        rebuild-on-failure: true
        min-retrigger-interval: 120
        source:
          base-url: https://bitbucket.example.com
          project: PROJ
          repository: core
          post-build-status: true
          credentials:
            username: bot
            password-env: BITBUCKET_PASSWORD
        build:
          base-url: https://teamcity.example.com
          build-config: Core_PullRequests
          credentials:
            username: bot
            password: hunter2
    """
)


def test_load_config(tmp_path):
    path = tmp_path / "watch.yml"
    path.write_text(CONFIG_YAML)

    config = load_config(path)

    assert len(config.watches) == 1
    watch = config.watches[0]
    assert watch.name == "core"
    assert watch.repository_id == "PROJ/core"
    assert watch.build_config == "Core_PullRequests"
    assert watch.poll_interval == 30
    assert watch.rebuild_on_failure
    assert watch.min_retrigger_interval == 120
    assert watch.source.post_build_status
    assert watch.source.comment_build_status
    assert watch.max_concurrent_triggers == 4
    assert watch.retire_after_missed_polls == 2


def test_load_config_rejects_unknown_keys(tmp_path):
    path = tmp_path / "watch.yml"
    path.write_text(CONFIG_YAML.replace("poll-interval: 30", "poll-every: 30"))

    with pytest.raises(ConfigError):
        load_config(path)


def test_load_config_missing_and_empty(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yml")

    path = tmp_path / "empty.yml"
    path.write_text("")
    with pytest.raises(ConfigError):
        load_config(path)


def test_duplicate_watch_names_rejected(tmp_path):
    path = tmp_path / "watch.yml"
    body = CONFIG_YAML.split("watches:\n", 1)[1]
    path.write_text("watches:\n" + body + body)

    with pytest.raises(ConfigError, match="Duplicate watch name"):
        load_config(path)


def test_invalid_values_rejected():
    with pytest.raises(pydantic.ValidationError):
        make_config(poll_interval=0)
    with pytest.raises(pydantic.ValidationError):
        make_config(retire_after_missed_polls=0)


def test_branch_filter():
    config = make_config(branch_filter=["feature/*"])
    assert config.branch_matches("refs/heads/feature/login")
    assert config.branch_matches("feature/login")
    assert not config.branch_matches("refs/heads/main")

    assert make_config().branch_matches("anything")
    assert make_config(branch_filter=["all"]).branch_matches("anything")
    assert make_config(branch_filter=["refs/heads/*"]).branch_matches(
        "refs/heads/main"
    )


def test_credentials_password_sources(monkeypatch):
    assert Credentials(username="u", password="p").resolve_password() == "p"

    creds = Credentials.model_validate({"username": "u", "password-env": "TC_PW"})
    monkeypatch.setenv("TC_PW", "from-env")
    assert creds.resolve_password() == "from-env"

    monkeypatch.delenv("TC_PW")
    with pytest.raises(ConfigError):
        creds.resolve_password()

    with pytest.raises(pydantic.ValidationError):
        Credentials(username="u")
