from datetime import timedelta

from conftest import FakeClock, make_config, make_pr

from prbuilder.reconcile import ReconciliationEngine
from prbuilder.types import Action, BuildStatus, PullRequestState


def _state(pr_id="42", commit="aaa", **kwargs):
    return PullRequestState(pull_request_id=pr_id, last_triggered_commit=commit, **kwargs)


def test_first_sighting_triggers():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config())

    decisions = engine.reconcile([make_pr("42", "aaa")], {}, clock())

    assert len(decisions) == 1
    assert decisions[0].action == Action.trigger
    assert decisions[0].reason == "first-sighting"
    assert decisions[0].commit == "aaa"


def test_unchanged_commit_is_noop():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config())
    states = {"42": _state(last_updated=clock())}

    for _ in range(3):
        decisions = engine.reconcile([make_pr("42", "aaa")], states, clock())
        assert [d.action for d in decisions] == [Action.noop]
        assert decisions[0].reason == "up-to-date"


def test_new_commit_triggers_once_regardless_of_intermediate_commits():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config())
    states = {"42": _state(commit="aaa", last_updated=clock())}

    decisions = engine.reconcile([make_pr("42", "ddd")], states, clock())

    assert [d.action for d in decisions] == [Action.trigger]
    assert decisions[0].reason == "new-commit"
    assert decisions[0].commit == "ddd"


def test_branch_filter_blocks_first_sighting():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config(branch_filter=["release/*"]))

    decisions = engine.reconcile(
        [
            make_pr("1", "aaa", branch="refs/heads/feature/x"),
            make_pr("2", "bbb", branch="refs/heads/release/1.0"),
        ],
        {},
        clock(),
    )

    assert [(d.pull_request_id, d.action, d.reason) for d in decisions] == [
        ("1", Action.noop, "filtered"),
        ("2", Action.trigger, "first-sighting"),
    ]


def test_decisions_keep_listing_order():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config())
    prs = [make_pr(str(i), f"c{i}") for i in (5, 3, 9, 1)]

    decisions = engine.reconcile(prs, {}, clock())

    assert [d.pull_request_id for d in decisions] == ["5", "3", "9", "1"]


def test_duplicate_listing_entries_trigger_once():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config())

    decisions = engine.reconcile(
        [make_pr("7", "aaa"), make_pr("7", "aaa")], {}, clock()
    )

    assert [d.action for d in decisions] == [Action.trigger, Action.noop]
    assert decisions[1].reason == "duplicate"


def test_missing_pr_gets_grace_then_retire():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config())

    decisions = engine.reconcile([], {"42": _state()}, clock())
    assert [(d.action, d.reason, d.missed_polls) for d in decisions] == [
        (Action.noop, "grace", 1)
    ]

    decisions = engine.reconcile([], {"42": _state(missed_polls=1)}, clock())
    assert [(d.action, d.missed_polls) for d in decisions] == [(Action.retire, 2)]


def test_retire_threshold_is_configurable():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config(retire_after_missed_polls=1))

    decisions = engine.reconcile([], {"42": _state()}, clock())

    assert decisions[0].action == Action.retire


def test_missing_decisions_follow_open_prs():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config())
    states = {"1": _state("1", "aaa"), "2": _state("2", "bbb")}

    decisions = engine.reconcile([make_pr("2", "bbb")], states, clock())

    assert [(d.pull_request_id, d.reason) for d in decisions] == [
        ("2", "up-to-date"),
        ("1", "grace"),
    ]


def test_rebuild_on_failure_respects_cooldown():
    clock = FakeClock()
    engine = ReconciliationEngine(
        make_config(rebuild_on_failure=True, min_retrigger_interval=300)
    )
    states = {
        "42": _state(last_build_status=BuildStatus.failed, last_updated=clock())
    }

    clock.advance(299)
    decisions = engine.reconcile([make_pr("42", "aaa")], states, clock())
    assert (decisions[0].action, decisions[0].reason) == (
        Action.noop,
        "rebuild-cooldown",
    )

    clock.advance(1)
    decisions = engine.reconcile([make_pr("42", "aaa")], states, clock())
    assert (decisions[0].action, decisions[0].reason) == (
        Action.trigger,
        "rebuild-failed",
    )


def test_failed_build_not_rebuilt_without_policy():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config())
    states = {
        "42": _state(
            last_build_status=BuildStatus.failed,
            last_updated=clock() - timedelta(days=1),
        )
    }

    decisions = engine.reconcile([make_pr("42", "aaa")], states, clock())

    assert decisions[0].action == Action.noop


def test_rejected_commit_suppressed_until_head_changes():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config(rebuild_on_failure=True))
    states = {"42": PullRequestState(pull_request_id="42", rejected_commit="aaa")}

    decisions = engine.reconcile([make_pr("42", "aaa")], states, clock())
    assert (decisions[0].action, decisions[0].reason) == (Action.noop, "rejected")

    decisions = engine.reconcile([make_pr("42", "bbb")], states, clock())
    assert decisions[0].action == Action.trigger


def test_reconcile_does_not_mutate_inputs():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config())
    state = _state(missed_polls=0)
    states = {"42": state, "9": _state("9", "zzz")}

    engine.reconcile([make_pr("42", "bbb")], states, clock())

    assert set(states) == {"42", "9"}
    assert state.last_triggered_commit == "aaa"
    assert states["9"].missed_polls == 0


def test_head_reverted_to_built_commit_is_not_rebuilt():
    clock = FakeClock()
    engine = ReconciliationEngine(make_config())
    states = {"42": _state(commit="bbb", triggered_commits={"aaa", "bbb"})}

    decisions = engine.reconcile([make_pr("42", "aaa")], states, clock())

    assert (decisions[0].action, decisions[0].reason) == (
        Action.noop,
        "previously-built",
    )
