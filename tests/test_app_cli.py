from __future__ import annotations

import argparse
import base64
import json
import os

import responses

from app import build_orchestrator, cmd_confirm, main
from tests.helpers.fakes import FakeSteamTransport

RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


def _import(root, name):
    return main(["--root", root, "import", "--uri", f"otpauth://totp/Svc:{name}?secret={RFC_SECRET}"])


def test_fresh_root_gets_config_and_manifest(tmp_path, capsys):
    root = str(tmp_path)
    assert main(["--root", root, "list"]) == 0
    assert capsys.readouterr().out == ""
    assert os.path.exists(os.path.join(root, "config", "app.json"))
    with open(os.path.join(root, "maFiles", "manifest.json"), "r", encoding="utf-8") as f:
        assert json.load(f)["first_run"] is False


def test_import_list_and_move(tmp_path, capsys):
    root = str(tmp_path)
    assert _import(root, "alice") == 0
    assert _import(root, "bob") == 0
    assert "imported bob" in capsys.readouterr().out

    assert main(["--root", root, "list"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert [ln.split()[-1] for ln in lines] == ["alice", "bob"]
    assert lines[0].startswith("*")

    assert main(["--root", root, "move", "1", "0"]) == 0
    main(["--root", root, "list", "--filter", "~^b"])
    assert capsys.readouterr().out.split()[-1] == "bob"

    assert main(["--root", root, "move", "0", "7"]) == 0
    assert "nothing to move" in capsys.readouterr().out


def test_duplicate_import_fails(tmp_path, capsys):
    root = str(tmp_path)
    assert _import(root, "alice") == 0
    assert _import(root, "alice") == 1
    assert "duplicate_account" in capsys.readouterr().err


def test_settings_round_trip(tmp_path, capsys):
    root = str(tmp_path)
    assert main(["--root", root, "settings", "--periodic-checking", "on", "--interval", "30"]) == 0
    out = capsys.readouterr().out
    assert "periodic_checking = True" in out
    assert "periodic_checking_interval = 30" in out

    assert main(["--root", root, "settings", "--interval", "0"]) == 1
    assert "invalid_settings" in capsys.readouterr().err


def test_remove_plain(tmp_path, capsys):
    root = str(tmp_path)
    _import(root, "alice")
    assert main(["--root", root, "remove", "alice"]) == 0
    assert main(["--root", root, "remove", "alice"]) == 1
    assert "account_not_found" in capsys.readouterr().err


def test_corrupt_manifest_exit_code(tmp_path, capsys):
    root = str(tmp_path)
    os.makedirs(os.path.join(root, "maFiles"))
    with open(os.path.join(root, "maFiles", "manifest.json"), "w", encoding="utf-8") as f:
        f.write("{broken")
    assert main(["--root", root, "list"]) == 2
    assert "manifest_corrupt" in capsys.readouterr().err


def test_build_orchestrator_uses_config(tmp_path):
    root = str(tmp_path)
    os.makedirs(os.path.join(root, "config"))
    with open(os.path.join(root, "config", "app.json"), "w", encoding="utf-8") as f:
        json.dump({"manifest_path": "vault/m.json", "kdf": {"scrypt_n": 1024}}, f)
    orch = build_orchestrator(root)
    try:
        assert orch.store.path == os.path.join(root, "vault/m.json")
        assert orch.store.kdf.n == 1024
    finally:
        orch.bus.shutdown(0.1)


def _confirm(orch, account, id=None, action=None):  # noqa: A002
    return cmd_confirm(orch, argparse.Namespace(account=account, id=id, action=action))


@responses.activate  # no time source reachable: alignment falls back to the local clock
def test_confirm_lists_and_answers_pending_confirmations(tmp_path, capsys):
    root = str(tmp_path)
    mafile = tmp_path / "alice.maFile"
    mafile.write_text(
        json.dumps(
            {
                "account_name": "alice",
                "shared_secret": base64.b64encode(bytes(range(20))).decode("ascii"),
                "identity_secret": base64.b64encode(b"identity-secret-bytes").decode("ascii"),
                "device_id": "android:1234",
                "Session": {"SteamID": 7656119, "SessionID": "abc"},
            }
        ),
        encoding="utf-8",
    )
    transport = FakeSteamTransport(confirmations=[{"id": "11", "nonce": "99", "headline": "Trade with bob", "type": "trade"}])
    orch = build_orchestrator(root, steam_transport=transport)
    try:
        assert orch.open().ok
        assert orch.import_mafile(str(mafile)).ok

        assert _confirm(orch, "alice") == 0
        assert "11  trade: Trade with bob" in capsys.readouterr().out

        assert _confirm(orch, "alice", "11", "deny") == 0
        assert "denied 11" in capsys.readouterr().out
        assert transport.calls[-1]["op"] == "respond"
        assert transport.calls[-1]["accept"] is False
        assert transport.calls[-1]["nonce"] == "99"

        assert _confirm(orch, "alice", "12", "accept") == 1
        assert "confirmation_not_found" in capsys.readouterr().err
        assert _confirm(orch, "alice", "11") == 1
        assert _confirm(orch, "ghost") == 1
        assert "account_not_found" in capsys.readouterr().err
    finally:
        orch.stop()
        orch.bus.shutdown(0.1)
