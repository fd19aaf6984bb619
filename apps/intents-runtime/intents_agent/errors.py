"""Error types shared by the intents runtime."""

from __future__ import annotations

from typing import Any


class ConfigError(Exception):
    """Runtime configuration is missing or invalid."""


class KeyStoreError(Exception):
    """Key store is unavailable or invalid."""


class ChainError(Exception):
    """A cast invocation failed or returned unusable output."""

    def __init__(self, message: str = ""):
        super().__init__(clean_message(message))


class ChainTimeout(ChainError):
    """A cast invocation timed out (call/send/receipt)."""

    def __init__(self, kind: str, timeout_sec: int, cmd: list[str]):
        super().__init__(f"Timed out after {timeout_sec}s running: {' '.join(_redact(cmd))}")
        self.kind = kind
        self.timeout_sec = timeout_sec
        self.cmd = cmd


class IntentsError(Exception):
    """Base for failures that terminate an intent run."""

    code = "intents_error"

    def __init__(self, message: str, action_hint: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.action_hint = action_hint
        self.details = details or {}


class PreviewError(IntentsError):
    """The preview call reverted, failed or returned a malformed tuple."""

    code = "preview_failed"


class AllowanceError(IntentsError):
    """The allowance read or the approval transaction failed."""

    code = "allowance_failed"


class ExecutionError(IntentsError):
    """The command transaction could not be submitted."""

    code = "execution_failed"


class ConfirmationError(IntentsError):
    """A submitted transaction timed out or failed on-chain."""

    code = "confirmation_failed"

    def __init__(self, message: str, tx_hash: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.tx_hash = tx_hash
        if tx_hash:
            self.details.setdefault("txHash", tx_hash)


class UnknownError(IntentsError):
    code = "unknown_error"


def _redact(cmd: list[str]) -> list[str]:
    out: list[str] = []
    hide_next = False
    for part in cmd:
        if hide_next:
            out.append("<redacted>")
            hide_next = False
            continue
        out.append(part)
        if part == "--private-key":
            hide_next = True
    return out


def clean_message(text: str) -> str:
    """Collapse text to a single line and drop cast's own leading "Error:" tags."""
    msg = " ".join(str(text).split())
    while msg[:6].lower() == "error:":
        msg = msg[6:].lstrip()
    return msg
