from types import SimpleNamespace

from prbuilder.scheduler import WatchScheduler
from prbuilder.types import WatcherState
from prbuilder.web import state_context, status_context


def _watcher(repository, state=WatcherState.idle, halt_reason=None):
    return SimpleNamespace(
        repository=repository,
        state=state,
        halt_reason=halt_reason,
        halted=state == WatcherState.halted,
        describe=lambda: {"repository": repository, "state": state.value},
    )


def test_status_ok_while_no_watcher_halted():
    scheduler = WatchScheduler(
        [_watcher("a"), _watcher("b", WatcherState.backoff)]
    )

    code, body = status_context(scheduler)

    assert code == 200
    assert body["status"] == "ok"
    assert body["watchers"] == {"a": "idle", "b": "backoff"}
    assert body["halted"] == {}


def test_status_reports_halted_watchers():
    scheduler = WatchScheduler(
        [
            _watcher("a"),
            _watcher("b", WatcherState.halted, halt_reason="AuthError: 401"),
        ]
    )

    code, body = status_context(scheduler)

    assert code == 503
    assert body["status"] == "halted"
    assert body["halted"] == {"b": "AuthError: 401"}


def test_state_context_describes_watchers():
    scheduler = WatchScheduler([_watcher("a")])
    scheduler.stop()

    body = state_context(scheduler)

    assert body["stopping"]
    assert body["watchers"] == [{"repository": "a", "state": "idle"}]
