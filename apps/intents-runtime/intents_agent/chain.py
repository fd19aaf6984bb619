"""Async wrapper around the Foundry `cast` binary.

Every chain interaction (read call, calldata encoding, transaction send and
receipt wait) is a `cast` subprocess awaited on the event loop, so a run that
is waiting on the chain never holds a thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import pathlib
import re
import shutil
from dataclasses import dataclass
from typing import Any, Protocol

from .config import RuntimeConfig, is_hex_address
from .errors import ChainError, ChainTimeout

logger = logging.getLogger(__name__)


class ChainClient(Protocol):
    async def call(self, to: str, signature: str, args: list[str], *, sender: str | None = None) -> list[str]: ...

    async def calldata(self, signature: str, args: list[str]) -> str: ...

    async def send_transaction(self, tx_obj: dict[str, str], private_key_hex: str) -> str: ...

    async def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]: ...


@dataclass
class CastResult:
    returncode: int
    stdout: str
    stderr: str

    def error_text(self, fallback: str) -> str:
        return (self.stderr or "").strip() or (self.stdout or "").strip() or fallback


def find_cast_bin(explicit: str | None = None) -> str | None:
    # Foundry installs to user-space (~/.foundry/bin) which service managers
    # often leave off PATH.
    candidates: list[str] = []
    if explicit:
        candidates.append(explicit)

    foundry_bin = (os.environ.get("FOUNDRY_BIN") or "").strip()
    if foundry_bin:
        candidates.append(str(pathlib.Path(foundry_bin) / "cast"))

    which_cast = shutil.which("cast")
    if which_cast:
        candidates.append(which_cast)

    candidates.append(str(pathlib.Path.home() / ".foundry" / "bin" / "cast"))

    for entry in candidates:
        path = pathlib.Path(entry).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
    return None


def parse_uint_text(value: str) -> int:
    raw = value.strip()
    if re.fullmatch(r"[0-9]+", raw):
        return int(raw)
    if re.fullmatch(r"0x[a-fA-F0-9]+", raw):
        return int(raw, 16)
    # cast sometimes appends a scientific-notation hint, e.g. "20000000000000000000000 [2e22]".
    prefix = re.match(r"^(0x[a-fA-F0-9]+|[0-9]+)", raw)
    if prefix:
        token = prefix.group(1)
        if token.startswith("0x"):
            return int(token, 16)
        return int(token)
    raise ChainError(f"Unable to parse uint value: '{value}'.")


def extract_tx_hash(output: str) -> str:
    trimmed = (output or "").strip()
    if not trimmed:
        raise ChainError("cast send returned empty output.")
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        parsed = None

    candidates: list[Any] = []
    if isinstance(parsed, dict):
        candidates.extend([parsed.get("transactionHash"), parsed.get("txHash"), parsed.get("hash")])
    elif isinstance(parsed, list):
        for item in parsed:
            if isinstance(item, dict):
                candidates.extend([item.get("transactionHash"), item.get("txHash"), item.get("hash")])

    for value in candidates:
        if isinstance(value, str) and re.fullmatch(r"0x[a-fA-F0-9]{64}", value):
            return value

    match = re.search(r"0x[a-fA-F0-9]{64}", trimmed)
    if match:
        return match.group(0)
    raise ChainError("cast send output did not include a transaction hash.")


def receipt_succeeded(receipt: dict[str, Any]) -> bool:
    status = str(receipt.get("status", "0x0")).strip().lower()
    return status in {"0x1", "1"}


class CastChainClient:
    """ChainClient backed by `cast` subprocesses against a single RPC URL."""

    def __init__(self, config: RuntimeConfig):
        self._config = config
        self._cast_bin: str | None = None

    @property
    def rpc_url(self) -> str:
        return self._config.rpc_url

    def _require_cast_bin(self) -> str:
        if self._cast_bin is None:
            cast_bin = find_cast_bin(self._config.cast_bin)
            if not cast_bin:
                raise ChainError("Missing dependency: cast.")
            self._cast_bin = cast_bin
        return self._cast_bin

    async def _run(self, args: list[str], *, timeout_sec: int, kind: str) -> CastResult:
        cmd = [self._require_cast_bin(), *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ChainError(f"Unable to run cast: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_sec)
        except asyncio.TimeoutError as exc:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise ChainTimeout(kind=kind, timeout_sec=timeout_sec, cmd=cmd) from exc
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise
        return CastResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
        )

    async def call(self, to: str, signature: str, args: list[str], *, sender: str | None = None) -> list[str]:
        """Run a read-only call and return the decoded return values, one per line."""
        if not is_hex_address(to):
            raise ChainError(f"cast call requires a hex target address, got '{to}'.")
        cmd = ["call", "--rpc-url", self.rpc_url]
        if sender:
            cmd.extend(["--from", sender])
        # Intent text is free-form and may start with a dash.
        cmd.extend(["--", to, signature, *args])
        result = await self._run(cmd, timeout_sec=self._config.call_timeout_sec, kind="cast_call")
        if result.returncode != 0:
            raise ChainError(result.error_text(f"cast call {signature} failed."))
        return [line.strip() for line in result.stdout.strip().splitlines() if line.strip()]

    async def calldata(self, signature: str, args: list[str]) -> str:
        result = await self._run(["calldata", "--", signature, *args], timeout_sec=self._config.call_timeout_sec, kind="cast_call")
        if result.returncode != 0:
            raise ChainError(result.error_text(f"cast calldata failed for {signature}."))
        data = result.stdout.strip()
        if not re.fullmatch(r"0x[a-fA-F0-9]+", data):
            raise ChainError(f"cast calldata returned malformed output for {signature}.")
        return data

    async def send_transaction(self, tx_obj: dict[str, str], private_key_hex: str) -> str:
        """Broadcast a signed transaction and return its hash without waiting for inclusion."""
        from_addr = tx_obj.get("from")
        to_addr = tx_obj.get("to")
        data = tx_obj.get("data")
        value = tx_obj.get("value")
        if not isinstance(from_addr, str) or not is_hex_address(from_addr):
            raise ChainError("cast send requires tx_obj.from as hex address.")
        if not isinstance(to_addr, str) or not is_hex_address(to_addr):
            raise ChainError("cast send requires tx_obj.to as hex address.")
        if not isinstance(data, str) or not re.fullmatch(r"0x[a-fA-F0-9]*", data):
            raise ChainError("cast send requires tx_obj.data as hex calldata.")
        if value is not None and not re.fullmatch(r"[0-9]+", str(value)):
            raise ChainError("cast send requires tx_obj.value as a decimal wei amount.")

        cmd = [
            "send",
            "--json",
            "--async",
            "--rpc-url",
            self.rpc_url,
            "--private-key",
            private_key_hex,
            "--from",
            from_addr,
        ]
        if value is not None and int(value) > 0:
            cmd.extend(["--value", str(value)])
        cmd.extend([to_addr, data])
        result = await self._run(cmd, timeout_sec=self._config.send_timeout_sec, kind="cast_send")
        if result.returncode != 0:
            raise ChainError(result.error_text("cast send failed."))
        tx_hash = extract_tx_hash(result.stdout)
        logger.debug("broadcast tx %s from %s to %s", tx_hash, from_addr, to_addr)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        """Block (cooperatively) until cast reports a receipt for tx_hash."""
        if not re.fullmatch(r"0x[a-fA-F0-9]{64}", tx_hash):
            raise ChainError(f"Invalid transaction hash '{tx_hash}'.")
        cmd = [
            "receipt",
            "--json",
            "--confirmations",
            str(self._config.receipt_confirmations),
            "--rpc-url",
            self.rpc_url,
            tx_hash,
        ]
        result = await self._run(cmd, timeout_sec=self._config.receipt_timeout_sec, kind="cast_receipt")
        if result.returncode != 0:
            raise ChainError(result.error_text("cast receipt failed."))
        try:
            payload = json.loads(result.stdout.strip() or "{}")
        except json.JSONDecodeError as exc:
            raise ChainError("cast receipt returned malformed JSON.") from exc
        if not isinstance(payload, dict):
            raise ChainError("cast receipt returned a non-object payload.")
        return payload
