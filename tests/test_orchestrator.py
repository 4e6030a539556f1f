from __future__ import annotations

import json
import threading
import time

from authdesk.core.events.bus import EventBus
from authdesk.core.providers.base import ConfirmationAction, DeactivationScheme, PendingConfirmation
from authdesk.core.sessions import RefreshOutcome
from tests.helpers.fakes import FakeClock, StubAligner, fake_entry, wait_for

RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
WINDOW_START = 1_700_000_010  # divisible by 30


def _provider(orch, name):
    return next(p for p in orch.providers() if p.account_name == name)


def _seed(store, *names, **payload):
    for n in names:
        store.add_entry(fake_entry(n, **payload))


def test_open_selects_first_account_and_clears_first_run(store, make_orchestrator):
    _seed(store, "alice", "bob")
    orch = make_orchestrator()
    res = orch.open()
    assert res.ok
    assert res.data["accounts"] == ["alice", "bob"]
    assert orch.selection.active == "alice"
    assert store.settings()["first_run"] is False


def test_open_encrypted_manifest_needs_passkey(store, make_orchestrator):
    _seed(store, "alice")
    store.rekey(None, "pw")
    orch = make_orchestrator()
    res = orch.open("bad")
    assert not res.ok and res.code == "wrong_passkey"
    assert orch.providers() == ()
    assert orch.open("pw").ok
    assert [p.account_name for p in orch.providers()] == ["alice"]


def test_open_corrupt_manifest_is_fatal_code(store, manifest_path, make_orchestrator):
    with open(manifest_path, "w", encoding="utf-8") as f:
        f.write("[]")
    res = make_orchestrator().open()
    assert not res.ok
    assert res.code == "manifest_corrupt"


def test_fast_tick_uses_aligned_time_and_code_window(store, make_orchestrator):
    _seed(store, "alice")
    clock = FakeClock(WINDOW_START - 120)
    al = StubAligner(clock=clock, server_offset=120)
    al.align()
    orch = make_orchestrator(aligner=al)
    orch.open()

    t0 = orch.fast_tick()
    clock.advance(29)
    t1 = orch.fast_tick()
    clock.advance(1)
    t2 = orch.fast_tick()

    assert t0.timestamp == WINDOW_START
    assert t0.account_name == "alice"
    assert t0.window == WINDOW_START // 30
    assert t0.code == t1.code
    assert t2.code != t0.code
    assert t2.window == t0.window + 1
    assert (t0.seconds_remaining, t1.seconds_remaining, t2.seconds_remaining) == (30, 1, 30)


def test_fast_tick_without_accounts_still_ticks(make_orchestrator):
    orch = make_orchestrator()
    orch.open()
    t = orch.fast_tick()
    assert t.code is None and t.account_name is None
    assert 1 <= t.seconds_remaining <= 30


def test_failed_alignment_falls_back_to_local_clock(store, make_orchestrator):
    _seed(store, "alice")
    al = StubAligner(clock=FakeClock(WINDOW_START), fail=True)
    orch = make_orchestrator(aligner=al)
    orch.open()

    t = orch.fast_tick()
    assert t.timestamp == WINDOW_START
    assert t.code is not None
    assert wait_for(lambda: orch.status()["status"] == "align_failed")
    assert orch.status()["alignment"]["last_ok"] is False


def test_successful_alignment_clears_aligning_status(store, make_orchestrator):
    bus = EventBus()
    seen = []
    bus.subscribe("status.changed", lambda ev: seen.append(ev.payload["status"]))
    orch = make_orchestrator(bus=bus, aligner=StubAligner(server_offset=3))
    orch.open()
    assert orch.fast_tick().aligning is True
    assert wait_for(lambda: seen[-2:] == ["aligning", "ready"])
    assert orch.aligner.offset == 3
    bus.shutdown(0.5)


def test_select_refreshes_session_once_and_persists_payload(store, make_orchestrator):
    _seed(store, "alice", "bob")
    orch = make_orchestrator()
    orch.open()

    assert orch.select("bob").result(2) == RefreshOutcome.REFRESHED
    assert orch.select("bob").result(2) == RefreshOutcome.ALREADY_FRESH
    assert _provider(orch, "bob").refresh_calls == 1
    assert store.get("bob").payload["refreshed"] == 1
    assert orch.selection.active == "bob"
    assert orch.select("nobody") is None


def test_failed_refresh_retries_on_next_selection(store, make_orchestrator):
    _seed(store, "bob", refresh_ok=False)
    orch = make_orchestrator()
    orch.open()
    assert orch.select("bob").result(2) == RefreshOutcome.FAILED
    assert orch.select("bob").result(2) == RefreshOutcome.FAILED
    assert _provider(orch, "bob").refresh_calls == 2


def test_explicit_refresh_ignores_cache(store, make_orchestrator):
    _seed(store, "alice")
    orch = make_orchestrator()
    orch.open()
    orch.select("alice").result(2)
    res = orch.refresh_session("alice")
    assert res.ok
    assert _provider(orch, "alice").refresh_calls == 2
    assert store.get("alice").payload["refreshed"] == 2


def test_refresh_with_invalid_session_is_reported(store, make_orchestrator):
    _seed(store, "alice", refresh_error=True)
    orch = make_orchestrator()
    orch.open()
    res = orch.refresh_session()
    assert not res.ok and res.code == "invalid_session"
    assert orch.sessions.is_fresh("alice") is False


def test_change_passkey(store, make_orchestrator):
    _seed(store, "alice")
    orch = make_orchestrator()
    orch.open()

    assert orch.change_passkey(None, "a", "b").code == "passkey_mismatch"
    assert store.is_encrypted() is False

    assert orch.change_passkey(None, "pw", "pw").ok
    assert store.is_encrypted() is True

    assert orch.change_passkey("bad", "x", "x").code == "wrong_passkey"
    assert store.verify_passkey("pw")

    assert orch.change_passkey("pw", "", "").ok
    assert store.is_encrypted() is False


def test_deactivate_account(store, make_orchestrator):
    _seed(store, "alice", deactivate_ok=False)
    _seed(store, "bob")
    orch = make_orchestrator()
    orch.open()
    now = orch.aligner.now()

    assert orch.deactivate_account("bob", DeactivationScheme.NONE, "x").code == "no_action"
    assert orch.deactivate_account("bob", DeactivationScheme.SCHEME_1, "wrong").code == "code_mismatch"

    alice_code = _provider(orch, "alice").generate_code(now)
    assert orch.deactivate_account("alice", DeactivationScheme.SCHEME_1, alice_code).code == "deactivate_failed"
    assert store.names() == ["alice", "bob"]

    bob = _provider(orch, "bob")
    res = orch.deactivate_account("bob", DeactivationScheme.SCHEME_2, bob.generate_code(now).lower())
    assert res.ok
    assert bob.deactivated == [DeactivationScheme.SCHEME_2]
    assert store.names() == ["alice"]


def test_remove_account_updates_selection_and_sessions(store, make_orchestrator):
    _seed(store, "alice", "bob")
    orch = make_orchestrator()
    orch.open()
    orch.select("bob").result(2)

    assert orch.remove_account("bob").ok
    assert orch.selection.active == "alice"
    assert orch.sessions.is_fresh("bob") is False
    assert orch.remove_account("bob").code == "account_not_found"


def test_move_active(store, make_orchestrator):
    _seed(store, "alice", "bob", "carl")
    orch = make_orchestrator()
    orch.open()

    assert orch.move_active(1).ok
    assert store.names() == ["bob", "alice", "carl"]
    assert orch.selection.active == "alice"
    assert orch.move_active(-5).code == "no_op"
    assert orch.move_account(0, 9).code == "no_op"


def test_import_validates_before_adding(store, tmp_path, make_orchestrator):
    orch = make_orchestrator()
    orch.open()

    assert orch.import_otpauth_uri(f"otpauth://totp/Svc:me?secret={RFC_SECRET}").ok
    assert orch.import_otpauth_uri("otpauth://totp/nothing").code == "import_failed"

    bad = tmp_path / "bad.maFile"
    bad.write_text(json.dumps({"account_name": "gaben", "shared_secret": "!!not base64!!"}), encoding="utf-8")
    assert orch.import_mafile(str(bad)).code == "import_failed"
    assert store.names() == ["me"]
    assert orch.add_account(fake_entry("me")).code == "duplicate_account"


def test_poll_tick_publishes_one_batch_until_acknowledged(store, make_orchestrator):
    store.add_entry(fake_entry("alice", confirmations=[{"id": "1", "description": "Trade"}]))
    store.add_entry(fake_entry("bob", fetch_error="invalid_session"))
    bus = EventBus()
    batches = []
    errors = []
    bus.subscribe("confirmations.batch", lambda ev: batches.append(ev.payload))
    bus.subscribe("error.raised", lambda ev: errors.append((ev.account_name, ev.payload["code"])))
    orch = make_orchestrator(bus=bus)
    orch.open()
    assert orch.update_settings(check_all_accounts=True).ok

    res = orch.poll_tick()
    assert res.notified
    assert orch.poll_tick().reason == "pending_ack"
    assert wait_for(lambda: len(batches) == 1 and errors)
    assert batches[0]["confirmations"] == [{"account_name": "alice", "id": "1", "description": "Trade", "type": "trade"}]
    assert ("bob", "invalid_session") in errors

    orch.acknowledge_confirmations()
    assert orch.poll_tick().notified
    bus.shutdown(0.5)


def test_respond_to_confirmation_forwards_proof(store, make_orchestrator):
    _seed(store, "alice")
    orch = make_orchestrator()
    orch.open()
    conf = PendingConfirmation(id="7", nonce="n7", account_name="alice")

    res = orch.respond_to_confirmation(conf, ConfirmationAction.ACCEPT)
    assert res.ok
    sent = _provider(orch, "alice").responses[0]
    assert sent["proof"].key == f"accept:{orch.aligner.now()}"

    ghost = PendingConfirmation(id="8", account_name="ghost")
    assert orch.respond_to_confirmation(ghost, ConfirmationAction.DENY).code == "account_not_found"


def test_settings_control_the_poll_task(store, make_orchestrator):
    orch = make_orchestrator()
    orch.open()
    orch.start()
    assert orch.status()["polling"] is False

    assert orch.update_settings(periodic_checking=True, periodic_checking_interval=60).ok
    assert orch.status()["polling"] is True
    assert orch.update_settings(periodic_checking=False).ok
    assert orch.status()["polling"] is False
    assert orch.update_settings(periodic_checking_interval=0).code == "invalid_settings"


def test_reload_settings_picks_up_external_changes(store, manifest_path, make_orchestrator):
    orch = make_orchestrator()
    orch.open()
    with open(manifest_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    data["check_all_accounts"] = True
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(data, f)

    res = orch.reload_settings()
    assert res.ok and res.data["check_all_accounts"] is True
    assert orch.poller.check_all_accounts is True


def test_stop_drops_late_work(store, make_orchestrator):
    _seed(store, "alice")
    orch = make_orchestrator()
    orch.open()
    orch.stop()
    assert orch.select("alice") is None
    assert orch.poll_tick().reason == "closed"


def _timed(fn):
    started = time.monotonic()
    out = fn()
    return out, time.monotonic() - started


def test_slow_remote_deactivation_does_not_stall_the_fast_tick(store, make_orchestrator):
    _seed(store, "alice", deactivate_delay=1.0)
    _seed(store, "bob")
    orch = make_orchestrator()
    orch.open()
    results = []
    worker = threading.Thread(target=lambda: results.append(orch.remove_account("alice", True, DeactivationScheme.SCHEME_1)))
    worker.start()
    assert wait_for(lambda: _provider(orch, "alice").deactivated)

    tick, elapsed = _timed(orch.fast_tick)
    assert elapsed < 0.5
    assert tick.account_name == "alice" and tick.code is not None
    _, elapsed = _timed(lambda: orch.move_account(0, 1))
    assert elapsed < 0.5

    worker.join(3)
    assert results[0].ok
    assert store.names() == ["bob"]


def test_account_removed_while_deactivating_is_reported_missing(store, make_orchestrator):
    _seed(store, "alice", deactivate_delay=0.5)
    orch = make_orchestrator()
    orch.open()
    results = []
    worker = threading.Thread(target=lambda: results.append(orch.remove_account("alice", True)))
    worker.start()
    assert wait_for(lambda: _provider(orch, "alice").deactivated)
    assert orch.remove_account("alice").ok
    worker.join(3)
    assert results[0].code == "account_not_found"
    assert store.names() == []


def test_disabling_polling_mid_fetch_blocks_neither_settings_nor_ticks(store, make_orchestrator):
    _seed(store, "alice", fetch_delay=1.0)
    orch = make_orchestrator(code_interval_seconds=60)
    orch.open()
    orch.start()
    assert orch.update_settings(periodic_checking=True, periodic_checking_interval=1).ok
    assert wait_for(lambda: _provider(orch, "alice").fetch_calls == 1, timeout=3.0)

    res, elapsed = _timed(lambda: orch.update_settings(periodic_checking=False))
    assert res.ok and elapsed < 0.5
    _, elapsed = _timed(orch.fast_tick)
    assert elapsed < 0.5
    assert orch.status()["polling"] is False

    # the loop that was mid-fetch finishes and does not poll again
    assert not wait_for(lambda: _provider(orch, "alice").fetch_calls > 1, timeout=2.0)


def test_mutations_on_a_locked_manifest_are_refused(store, manifest_path, make_orchestrator):
    _seed(store, "alice", "bob")
    store.rekey(None, "pw")
    orch = make_orchestrator()
    assert orch.open("bad").code == "wrong_passkey"

    assert orch.move_account(0, 1).code == "manifest_locked"
    assert orch.remove_account("alice").code == "manifest_locked"
    with open(manifest_path, "r", encoding="utf-8") as f:
        assert [e["account_name"] for e in json.load(f)["entries"]] == ["alice", "bob"]

    assert orch.open("pw").ok
    assert orch.move_account(0, 1).ok


def test_countdown_follows_the_account_period(store, make_orchestrator):
    start = 1_700_000_040  # divisible by 60
    clock = FakeClock(start)
    orch = make_orchestrator(aligner=StubAligner(clock=clock))
    orch.open()
    assert orch.import_otpauth_uri(f"otpauth://totp/Svc:slow?secret={RFC_SECRET}&period=60").ok
    orch.select("slow")

    t0 = orch.fast_tick()
    clock.advance(30)
    t1 = orch.fast_tick()
    assert (t0.seconds_remaining, t1.seconds_remaining) == (60, 30)
    assert t0.window == t1.window == start // 60
    assert t0.code == t1.code
    assert orch.code_period() == 60


def test_pending_confirmations_fetches_on_demand(store, make_orchestrator):
    store.add_entry(fake_entry("alice", confirmations=[{"id": "1", "description": "Trade"}]))
    store.add_entry(fake_entry("bob", fetch_error="invalid_session"))
    orch = make_orchestrator()
    orch.open()

    res = orch.pending_confirmations("alice")
    assert res.ok
    assert [c.id for c in res.data["confirmations"]] == ["1"]
    assert orch.poller.awaiting_ack is False
    assert orch.pending_confirmations("bob").code == "invalid_session"
    assert orch.pending_confirmations("ghost").code == "account_not_found"
