from __future__ import annotations

import argparse
import getpass
import sys
import time
from typing import List, Optional

from authdesk.core.config.manager import ConfigManager
from authdesk.core.config.paths import AppPaths
from authdesk.core.crypto import KdfParams
from authdesk.core.error_reporter import ErrorReporter, ErrorReporterConfig
from authdesk.core.events import BaseEvent, EventBus, EventType
from authdesk.core.logger import setup_logging
from authdesk.core.manifest.store import ManifestStore
from authdesk.core.orchestrator import OperationResult, Orchestrator
from authdesk.core.providers.base import ConfirmationAction, DeactivationScheme
from authdesk.core.time_aligner import TimeAligner, seconds_remaining

MAX_PASSKEY_ATTEMPTS = 3


def build_orchestrator(root: str = ".", *, logger=None, steam_transport=None) -> Orchestrator:
    config = ConfigManager(fs=AppPaths(root), logger=logger)
    cfg = config.load()

    error_reporter = ErrorReporter(
        path=config.error_log(),
        cfg=ErrorReporterConfig(include_tracebacks=bool(cfg.error_reporter.include_tracebacks)),
        logger=logger,
    )
    bus = EventBus(cfg=cfg.events, logger=logger, error_reporter=error_reporter)
    manifest_path = config.manifest_path()
    store = ManifestStore(
        manifest_path,
        backups_dir=config.manifest_backups_dir(),
        max_backups=cfg.max_backups,
        kdf=KdfParams(n=cfg.kdf.scrypt_n),
        logger=logger,
    )
    aligner = TimeAligner(url=cfg.time_source.url, timeout_seconds=cfg.time_source.timeout_seconds, logger=logger)
    orch = Orchestrator(
        store=store,
        aligner=aligner,
        bus=bus,
        error_reporter=error_reporter,
        logger=logger,
        code_interval_seconds=cfg.ticks.code_interval_seconds,
        align_interval_seconds=cfg.time_source.align_interval_seconds,
        network_workers=cfg.ticks.network_workers,
    )
    if steam_transport is not None:
        orch.provider_ctx.steam_transport = steam_transport
    return orch


def _open(orch: Orchestrator) -> OperationResult:
    res = orch.open(None)
    attempts = 0
    while not res.ok and res.code == "wrong_passkey" and attempts < MAX_PASSKEY_ATTEMPTS:
        attempts += 1
        try:
            passkey = getpass.getpass("Passkey: ")
        except (EOFError, KeyboardInterrupt):
            break
        res = orch.open(passkey)
    return res


def _report(res: OperationResult) -> int:
    if res.ok:
        return 0
    print(f"error: {res.code}: {res.message}" if res.message else f"error: {res.code}", file=sys.stderr)
    return 1


def _on_off(v: Optional[str]) -> Optional[bool]:
    if v is None:
        return None
    return v == "on"


def cmd_list(orch: Orchestrator, args: argparse.Namespace) -> int:
    names = orch.filter(args.filter or "")
    active = orch.selection.active
    for i, name in enumerate(names):
        mark = "*" if name == active else " "
        print(f"{mark} {i:>3}  {name}")
    return 0


def cmd_code(orch: Orchestrator, args: argparse.Namespace) -> int:
    if args.account and not orch.selection.set_active(args.account):
        print(f"error: account_not_found: {args.account}", file=sys.stderr)
        return 1
    orch.aligner.align()
    code = orch.current_code()
    if code is None:
        print("error: no account selected", file=sys.stderr)
        return 1
    print(f"{code}  ({seconds_remaining(orch.aligner.now(), orch.code_period())}s)")
    return 0


def cmd_import(orch: Orchestrator, args: argparse.Namespace) -> int:
    if args.mafile:
        res = orch.import_mafile(args.mafile)
    else:
        res = orch.import_otpauth_uri(args.uri)
    if res.ok:
        print(f"imported {res.data.get('account_name')}")
    return _report(res)


def cmd_remove(orch: Orchestrator, args: argparse.Namespace) -> int:
    if not args.deactivate:
        res = orch.remove_account(args.account)
    else:
        scheme = DeactivationScheme(int(args.scheme))
        try:
            entered = input(f"Current code for {args.account}: ")
        except (EOFError, KeyboardInterrupt):
            return 1
        res = orch.deactivate_account(args.account, scheme, entered)
    if res.ok:
        print(f"removed {args.account}")
    return _report(res)


def cmd_move(orch: Orchestrator, args: argparse.Namespace) -> int:
    res = orch.move_account(args.from_index, args.to_index)
    if res.code == "no_op":
        print("nothing to move")
        return 0
    return _report(res)


def cmd_encrypt(orch: Orchestrator, args: argparse.Namespace) -> int:
    try:
        current = getpass.getpass("Current passkey: ") if orch.store.is_encrypted() else None
        new = getpass.getpass("New passkey (empty to remove encryption): ")
        confirm = getpass.getpass("Confirm new passkey: ")
    except (EOFError, KeyboardInterrupt):
        return 1
    res = orch.change_passkey(current, new, confirm)
    if res.ok:
        print("manifest is now " + ("encrypted" if res.data.get("encrypted") else "unencrypted"))
    return _report(res)


def cmd_settings(orch: Orchestrator, args: argparse.Namespace) -> int:
    fields = {
        "periodic_checking": _on_off(args.periodic_checking),
        "periodic_checking_interval": args.interval,
        "check_all_accounts": _on_off(args.check_all),
        "language": args.language,
    }
    fields = {k: v for k, v in fields.items() if v is not None}
    res = orch.update_settings(**fields) if fields else OperationResult(True, data=orch.store.settings())
    for k, v in sorted(res.data.items()):
        print(f"{k} = {v}")
    return _report(res)


def cmd_confirm(orch: Orchestrator, args: argparse.Namespace) -> int:
    orch.aligner.align()
    res = orch.pending_confirmations(args.account)
    if not res.ok:
        return _report(res)
    pending = res.data["confirmations"]
    if args.id is None:
        for c in pending:
            print(f"{c.id}  {c.type}: {c.description}")
        return 0
    if args.action is None:
        print("error: say accept or deny", file=sys.stderr)
        return 1
    match = next((c for c in pending if c.id == args.id), None)
    if match is None:
        print(f"error: confirmation_not_found: {args.id}", file=sys.stderr)
        return 1
    action = ConfirmationAction(args.action)
    res = orch.respond_to_confirmation(match, action)
    if res.ok:
        print(("accepted " if action == ConfirmationAction.ACCEPT else "denied ") + args.id)
    return _report(res)


def cmd_run(orch: Orchestrator, args: argparse.Namespace) -> int:
    def show(ev: BaseEvent) -> None:
        if ev.event_type == EventType.CODE_UPDATED.value:
            p = ev.payload
            if p.get("code"):
                print(f"\r{ev.account_name}: {p['code']}  {p['seconds_remaining']:>2}s ", end="", flush=True)
        elif ev.event_type == EventType.CONFIRMATIONS_BATCH.value:
            print()
            for c in ev.payload.get("confirmations", []):
                print(f"[{c['account_name']}] {c['type']}: {c['description']} ({c['id']})")
            print("answer with: confirm <account> <id> accept|deny")
            orch.acknowledge_confirmations()
        elif ev.event_type == EventType.STATUS_CHANGED.value and ev.payload.get("status") == "align_failed":
            print("\nwarning: time alignment failed; using the local clock", file=sys.stderr)

    if args.account:
        orch.select(args.account)
    orch.bus.subscribe(EventType.CODE_UPDATED, show)
    orch.bus.subscribe(EventType.CONFIRMATIONS_BATCH, show)
    orch.bus.subscribe(EventType.STATUS_CHANGED, show)
    orch.start()
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        print()
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="authdesk: multi-account authenticator")
    ap.add_argument("--root", default=".", help="Installation root (config/, maFiles/, logs/).")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("list", help="List accounts in manifest order.")
    p.add_argument("--filter", default="", help='Substring, or "~regex".')
    p.set_defaults(fn=cmd_list)

    p = sub.add_parser("code", help="Print the current code.")
    p.add_argument("account", nargs="?")
    p.set_defaults(fn=cmd_code)

    p = sub.add_parser("import", help="Import an account.")
    g = p.add_mutually_exclusive_group(required=True)
    g.add_argument("--mafile", help="Path to a Steam .maFile.")
    g.add_argument("--uri", help="otpauth://totp/... URI.")
    p.set_defaults(fn=cmd_import)

    p = sub.add_parser("remove", help="Remove an account.")
    p.add_argument("account")
    p.add_argument("--deactivate", action="store_true", help="Deactivate the authenticator remotely first.")
    p.add_argument("--scheme", type=int, choices=[1, 2], default=1)
    p.set_defaults(fn=cmd_remove)

    p = sub.add_parser("move", help="Move an account to another position.")
    p.add_argument("from_index", type=int)
    p.add_argument("to_index", type=int)
    p.set_defaults(fn=cmd_move)

    p = sub.add_parser("encrypt", help="Set, change or remove the manifest passkey.")
    p.set_defaults(fn=cmd_encrypt)

    p = sub.add_parser("settings", help="Show or change manifest settings.")
    p.add_argument("--periodic-checking", choices=["on", "off"])
    p.add_argument("--interval", type=int, help="Confirmation polling interval in seconds.")
    p.add_argument("--check-all", choices=["on", "off"])
    p.add_argument("--language")
    p.set_defaults(fn=cmd_settings)

    p = sub.add_parser("confirm", help="List an account's pending confirmations, or answer one.")
    p.add_argument("account")
    p.add_argument("id", nargs="?")
    p.add_argument("action", nargs="?", choices=[a.value for a in ConfirmationAction])
    p.set_defaults(fn=cmd_confirm)

    p = sub.add_parser("run", help="Show live codes and poll confirmations.")
    p.add_argument("account", nargs="?")
    p.set_defaults(fn=cmd_run)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    # read-only peek: the real load below logs through this logger
    logger = setup_logging(ConfigManager(fs=AppPaths(args.root), read_only=True).text_log())
    orch = build_orchestrator(args.root, logger=logger)
    try:
        res = _open(orch)
        if not res.ok:
            _report(res)
            return 2 if res.code == "manifest_corrupt" else 1
        return int(args.fn(orch, args))
    finally:
        orch.stop()
        orch.bus.shutdown()


if __name__ == "__main__":
    raise SystemExit(main())
