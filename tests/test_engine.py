import os
import threading

import pytest

from vnc_protection.engine import AccessControlEngine, Verdict
from vnc_protection.errors import FilterCommandError, PersistenceError, ValidationError
from vnc_protection.liststore import ListName, ListStore, Outcome
from vnc_protection.rules import Action, FilterRule


def test_threshold_one_bans_on_first_failure(engine, iptables, audit):
    assert engine.on_failure_observed("203.0.113.7") is Verdict.DENIED
    assert engine.store.contains(ListName.DENIED, "203.0.113.7")
    assert iptables.actions("203.0.113.7") == ["DROP"]
    assert engine.tracker.count("203.0.113.7") == 0
    assert audit.lines == ["Blocked 203.0.113.7 for VNC access"]


def test_failures_below_threshold_are_recorded(engine, iptables, audit):
    engine.max_attempts = 3
    assert engine.on_failure_observed("203.0.113.7") is Verdict.RECORDED
    assert engine.on_failure_observed("203.0.113.7") is Verdict.RECORDED
    assert iptables.mutations == []
    assert engine.on_failure_observed("203.0.113.7") is Verdict.DENIED
    assert audit.lines == [
        "Failed attempt from 203.0.113.7 (Attempt 1)",
        "Failed attempt from 203.0.113.7 (Attempt 2)",
        "Blocked 203.0.113.7 for VNC access",
    ]


def test_allowed_address_never_banned_or_counted(engine, iptables):
    engine.allow("10.0.0.5")
    for _ in range(10):
        assert engine.on_failure_observed("10.0.0.5") is Verdict.IGNORED_ALLOWED
    assert not engine.store.contains(ListName.DENIED, "10.0.0.5")
    assert engine.tracker.count("10.0.0.5") == 0
    assert iptables.actions("10.0.0.5") == ["ACCEPT"]


def test_already_denied_restores_missing_rule(engine, iptables):
    engine.deny("203.0.113.7")
    iptables.chain.clear()
    assert engine.on_failure_observed("203.0.113.7") is Verdict.ALREADY_DENIED
    assert iptables.actions("203.0.113.7") == ["DROP"]


def test_deny_is_idempotent(engine, iptables, audit):
    assert engine.deny("203.0.113.7") is Outcome.ADDED
    assert engine.deny("203.0.113.7") is Outcome.ALREADY_PRESENT
    assert engine.store.all(ListName.DENIED) == ["203.0.113.7"]
    assert iptables.actions("203.0.113.7") == ["DROP"]
    assert audit.lines == ["Blocked 203.0.113.7 for VNC access"]


def test_allow_then_unallow_restores_state(engine, iptables):
    engine.deny("203.0.113.8")
    before_lists = (engine.store.all(ListName.ALLOWED), engine.store.all(ListName.DENIED))
    before_rules = list(iptables.chain)
    engine.allow("10.0.0.5")
    assert iptables.actions("10.0.0.5") == ["ACCEPT"]
    engine.unallow("10.0.0.5")
    assert (engine.store.all(ListName.ALLOWED), engine.store.all(ListName.DENIED)) == before_lists
    assert iptables.chain == before_rules


def test_allow_lifts_a_ban(engine, iptables, audit):
    engine.deny("203.0.113.7")
    assert engine.allow("203.0.113.7") is Outcome.ADDED
    assert not engine.store.contains(ListName.DENIED, "203.0.113.7")
    assert iptables.actions("203.0.113.7") == ["ACCEPT"]
    assert audit.lines[-1] == "Whitelisted 203.0.113.7 for VNC access"


def test_deny_overrides_allow(engine, iptables):
    engine.allow("10.0.0.5")
    engine.deny("10.0.0.5")
    assert engine.store.all(ListName.ALLOWED) == []
    assert iptables.actions("10.0.0.5") == ["DROP"]


def test_undeny(engine, iptables, audit):
    engine.deny("203.0.113.7")
    assert engine.undeny("203.0.113.7") is Outcome.REMOVED
    assert engine.undeny("203.0.113.7") is Outcome.NOT_PRESENT
    assert iptables.actions("203.0.113.7") == []
    assert audit.lines[-1] == "Unbanned 203.0.113.7 for VNC access"


def test_disjoint_after_mixed_operations(engine):
    operations = [
        (engine.allow, "10.0.0.1"),
        (engine.deny, "10.0.0.1"),
        (engine.deny, "10.0.0.2"),
        (engine.on_failure_observed, "10.0.0.3"),
        (engine.allow, "10.0.0.3"),
        (engine.unallow, "10.0.0.3"),
        (engine.on_failure_observed, "10.0.0.3"),
        (engine.allow, "10.0.0.2"),
    ]
    for operation, address in operations:
        operation(address)
        allowed = set(engine.store.all(ListName.ALLOWED))
        denied = set(engine.store.all(ListName.DENIED))
        assert not allowed & denied
    assert engine.store.all(ListName.ALLOWED) == ["10.0.0.2"]
    assert sorted(engine.store.all(ListName.DENIED)) == ["10.0.0.1", "10.0.0.3"]


def test_invalid_address_touches_nothing(engine, iptables):
    with pytest.raises(ValidationError):
        engine.deny("203.0.113.999")
    with pytest.raises(ValidationError):
        engine.on_failure_observed("garbage")
    assert iptables.calls == []


def test_rule_failure_keeps_list_change(engine, iptables):
    iptables.fail.add("-I")
    with pytest.raises(FilterCommandError):
        engine.deny("203.0.113.7")
    assert engine.store.contains(ListName.DENIED, "203.0.113.7")
    iptables.fail.clear()
    report = engine.reconcile()
    assert report.applied == [FilterRule("203.0.113.7", 9901, Action.DROP)]


def test_threshold_rule_failure_is_audited(engine, iptables, audit):
    iptables.fail.add("-I")
    assert engine.on_failure_observed("203.0.113.7") is Verdict.DENIED
    assert engine.store.contains(ListName.DENIED, "203.0.113.7")
    assert audit.lines[0] == "Blocked 203.0.113.7 for VNC access"
    assert audit.lines[1].startswith("Failed to apply rule for 203.0.113.7: ")


def test_inspect(engine, iptables):
    engine.allow("10.0.0.5")
    engine.deny("203.0.113.7")
    snapshot = engine.inspect()
    assert snapshot.allowed == ["10.0.0.5"]
    assert snapshot.denied == ["203.0.113.7"]
    assert {(rule.address, rule.action) for rule in snapshot.live_rules} == {
        ("10.0.0.5", Action.ACCEPT),
        ("203.0.113.7", Action.DROP),
    }


def test_sees_changes_made_by_another_process(tmp_path, engine, rules, audit):
    other = AccessControlEngine(
        ListStore(engine.store.paths[ListName.ALLOWED], engine.store.paths[ListName.DENIED]),
        rules,
        audit=audit,
        lock_path=engine.lock_path,
    )
    other.allow("10.0.0.5")
    assert engine.on_failure_observed("10.0.0.5") is Verdict.IGNORED_ALLOWED
    assert engine.is_allowed("10.0.0.5")


def test_concurrent_failures_ban_once(engine, iptables, audit):
    engine.max_attempts = 5
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        for _ in range(5):
            engine.on_failure_observed("203.0.113.7")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert engine.store.all(ListName.DENIED) == ["203.0.113.7"]
    assert iptables.actions("203.0.113.7") == ["DROP"]
    assert audit.lines.count("Blocked 203.0.113.7 for VNC access") == 1


def test_rejects_zero_threshold(store, rules):
    with pytest.raises(ValueError):
        AccessControlEngine(store, rules, max_attempts=0)


def failing_replace(monkeypatch, failures=1):
    real_replace = os.replace
    remaining = [failures]

    def replace(src, dst):
        if remaining[0] > 0:
            remaining[0] -= 1
            raise OSError(30, "Read-only file system")
        return real_replace(src, dst)

    monkeypatch.setattr(os, "replace", replace)


def test_deny_persistence_error_touches_no_rules(engine, iptables, audit, monkeypatch):
    engine.tracker.record_failure("203.0.113.7")
    failing_replace(monkeypatch)
    with pytest.raises(PersistenceError):
        engine.deny("203.0.113.7")
    assert iptables.mutations == []
    assert engine.store.all(ListName.DENIED) == []
    assert engine.tracker.count("203.0.113.7") == 1
    assert audit.lines == []


def test_allow_persistence_error_keeps_ban(engine, iptables, monkeypatch):
    engine.deny("203.0.113.7")
    mutations = len(iptables.mutations)
    failing_replace(monkeypatch)
    with pytest.raises(PersistenceError):
        engine.allow("203.0.113.7")
    assert engine.store.all(ListName.DENIED) == ["203.0.113.7"]
    assert engine.store.all(ListName.ALLOWED) == []
    assert len(iptables.mutations) == mutations
    assert iptables.actions("203.0.113.7") == ["DROP"]
