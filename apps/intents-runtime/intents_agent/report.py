"""Text reports for finished intent runs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .confirmation import TransactionRecord
from .errors import clean_message
from .preview import PreviewResult


@dataclass(frozen=True)
class ExecutionReport:
    preview: PreviewResult
    transaction: TransactionRecord
    explorer_url: str
    explorer_name: str = "BaseScan"
    approve_tx_hash: str | None = None

    ok = True

    def render(self) -> str:
        preview_json = json.dumps(self.preview.as_json_dict(), separators=(",", ":"))
        return (
            f"Preview: {preview_json}\n"
            f"Transaction successful: {self.transaction.tx_hash}\n"
            f"View on {self.explorer_name}: {self.explorer_url}"
        )

    def as_payload(self) -> dict[str, Any]:
        gas_cost = self.transaction.gas_cost_wei
        return {
            "report": self.render(),
            "preview": self.preview.as_json_dict(),
            "txHash": self.transaction.tx_hash,
            "status": self.transaction.status.value,
            "blockNumber": str(self.transaction.block_number) if self.transaction.block_number is not None else None,
            "gasCostWei": str(gas_cost) if gas_cost is not None else None,
            "approveTxHash": self.approve_tx_hash,
            "explorerUrl": self.explorer_url,
        }


@dataclass(frozen=True)
class FailureReport:
    error_kind: str
    code: str
    message: str
    state: str
    action_hint: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    ok = False

    def render(self) -> str:
        return f"Error: {clean_message(self.message)}"


def format_success(
    preview: PreviewResult,
    transaction: TransactionRecord,
    *,
    explorer_base_url: str,
    explorer_name: str,
    approve_tx_hash: str | None = None,
) -> ExecutionReport:
    return ExecutionReport(
        preview=preview,
        transaction=transaction,
        explorer_url=f"{explorer_base_url.rstrip('/')}/tx/{transaction.tx_hash}",
        explorer_name=explorer_name,
        approve_tx_hash=approve_tx_hash,
    )
