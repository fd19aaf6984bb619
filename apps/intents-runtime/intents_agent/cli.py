#!/usr/bin/env python3
"""Intents runtime CLI.

Executes natural-language intents against the Intents Engine contract for a
session-bound signer. Every command prints exactly one JSON object on stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

from .config import RuntimeConfig, default_app_dir, load_config
from .errors import ConfigError, IntentsError, KeyStoreError, clean_message
from .keystore import EncryptedFileKeyStore, KeyStore, signer_lock
from .orchestrator import IntentOrchestrator
from .signer import Signer


def emit(payload: dict) -> int:
    print(json.dumps(payload, separators=(",", ":")))
    return 0


def ok(message: str, **extra: object) -> int:
    payload = {"ok": True, "code": "ok", "message": message}
    payload.update(extra)
    return emit(payload)


def fail(code: str, message: str, action_hint: str | None = None, details: dict | None = None, exit_code: int = 1) -> int:
    payload: dict[str, object] = {"ok": False, "code": code, "message": message}
    if action_hint:
        payload["actionHint"] = action_hint
    if details:
        payload["details"] = details
    emit(payload)
    return exit_code


def require_json_flag(args: argparse.Namespace) -> int | None:
    if getattr(args, "json", False):
        return None
    return fail("missing_flag", "This command requires --json output mode.", "Re-run with --json.", exit_code=2)


def configure_logging() -> None:
    level_name = (os.environ.get("INTENTS_LOG_LEVEL") or "").strip().upper()
    if not level_name:
        return
    # stdout carries the JSON payload, so logs go to stderr.
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def open_key_store() -> KeyStore:
    passphrase = os.environ.get("INTENTS_WALLET_PASSPHRASE") or ""
    if not passphrase:
        raise KeyStoreError("INTENTS_WALLET_PASSPHRASE is not set.")
    return EncryptedFileKeyStore(default_app_dir(), passphrase)


def _key_store_failure(exc: KeyStoreError) -> int:
    msg = str(exc)
    if "permissions" in msg:
        return fail("unsafe_permissions", msg, "Restrict permissions to owner-only (0700/0600) and retry.")
    return fail("key_store_error", msg, "Check INTENTS_WALLET_PASSPHRASE and the key store file, then retry.")


def cmd_account_create(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        store = open_key_store()
        existing = store.get(args.session)
        if existing is not None and not args.force:
            return fail(
                "account_exists",
                f"Session '{args.session}' already has an account.",
                "Re-run with --force to replace it.",
                {"address": existing.address},
                exit_code=2,
            )
        signer = Signer.generate()
        store.set(args.session, signer)
        return ok("New account created!", session=args.session, address=signer.address)
    except KeyStoreError as exc:
        return _key_store_failure(exc)


def cmd_account_address(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        signer = open_key_store().get(args.session)
    except KeyStoreError as exc:
        return _key_store_failure(exc)
    if signer is None:
        return _account_missing(args.session)
    return ok("Account address.", session=args.session, address=signer.address)


def _account_missing(session: str) -> int:
    return fail(
        "account_missing",
        "Please create an account first using `account create`.",
        "Run: intents-agent account create --session <id> --json",
        {"session": session},
    )


async def _preview(config: RuntimeConfig, signer: Signer, intent: str) -> dict[str, Any]:
    preview = await IntentOrchestrator.from_config(config).preview(signer, intent)
    return {
        "preview": preview.as_json_dict(),
        "native": preview.is_native,
        "valueWei": str(preview.amount if preview.is_native else 0),
    }


def cmd_preview(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    try:
        config = load_config()
        signer = open_key_store().get(args.session)
        if signer is None:
            return _account_missing(args.session)
        with signer_lock(default_app_dir(), signer.address):
            payload = asyncio.run(_preview(config, signer, args.intent))
        return ok("Preview succeeded.", address=signer.address, **payload)
    except ConfigError as exc:
        return fail("config_invalid", str(exc), "Set INTENTS_RPC_URL (or INTENTS_CHAIN_CONFIG) and retry.")
    except KeyStoreError as exc:
        return _key_store_failure(exc)
    except IntentsError as exc:
        return fail(exc.code, f"Error: {clean_message(str(exc))}", exc.action_hint, exc.details)
    except Exception as exc:
        return fail("unknown_error", f"Error: {clean_message(str(exc)) or type(exc).__name__}", "Inspect runtime preview path and retry.")


def cmd_execute(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    intent = str(args.intent or "")
    if not intent.strip():
        return fail("invalid_input", "intent must not be empty.", "Provide the intent text with --intent.", exit_code=2)
    try:
        config = load_config()
        signer = open_key_store().get(args.session)
        if signer is None:
            return _account_missing(args.session)
        orchestrator = IntentOrchestrator.from_config(config)
        # Each CLI invocation is its own process, so the orchestrator's
        # in-process lock alone cannot keep two runs for one signer apart.
        with signer_lock(default_app_dir(), signer.address):
            outcome = asyncio.run(orchestrator.execute(signer, intent))
    except ConfigError as exc:
        return fail("config_invalid", str(exc), "Set INTENTS_RPC_URL (or INTENTS_CHAIN_CONFIG) and retry.")
    except KeyStoreError as exc:
        return _key_store_failure(exc)
    except IntentsError as exc:
        return fail(exc.code, f"Error: {clean_message(str(exc))}", exc.action_hint, exc.details)
    except Exception as exc:
        return fail("unknown_error", f"Error: {clean_message(str(exc)) or type(exc).__name__}", "Inspect runtime execute path and retry.")

    if outcome.ok:
        return ok(outcome.render(), address=signer.address, **outcome.as_payload())
    details = dict(outcome.details)
    details["errorKind"] = outcome.error_kind
    details["state"] = outcome.state
    return fail(outcome.code, outcome.render(), outcome.action_hint, details)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="intents-agent")
    sub = p.add_subparsers(dest="command")

    account = sub.add_parser("account")
    account_sub = account.add_subparsers(dest="account_cmd")

    a_create = account_sub.add_parser("create")
    a_create.add_argument("--session", required=True)
    a_create.add_argument("--force", action="store_true")
    a_create.add_argument("--json", action="store_true")
    a_create.set_defaults(func=cmd_account_create)

    a_addr = account_sub.add_parser("address")
    a_addr.add_argument("--session", required=True)
    a_addr.add_argument("--json", action="store_true")
    a_addr.set_defaults(func=cmd_account_address)

    preview = sub.add_parser("preview")
    preview.add_argument("--session", required=True)
    preview.add_argument("--intent", required=True)
    preview.add_argument("--json", action="store_true")
    preview.set_defaults(func=cmd_preview)

    execute = sub.add_parser("execute")
    execute.add_argument("--session", required=True)
    execute.add_argument("--intent", required=True)
    execute.add_argument("--json", action="store_true")
    execute.set_defaults(func=cmd_execute)

    return p


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 2
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
