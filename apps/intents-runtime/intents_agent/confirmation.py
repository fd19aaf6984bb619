from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from .chain import ChainClient, parse_uint_text, receipt_succeeded
from .errors import ChainError, ChainTimeout, ConfirmationError


class TxStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class TransactionRecord:
    tx_hash: str
    status: TxStatus = TxStatus.PENDING
    block_number: int | None = None
    gas_used: int | None = None
    effective_gas_price: int | None = None

    @property
    def gas_cost_wei(self) -> int | None:
        if self.gas_used is None or self.effective_gas_price is None:
            return None
        return self.gas_used * self.effective_gas_price


def _receipt_uint(payload: dict[str, Any], name: str) -> int | None:
    value = payload.get(name)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return parse_uint_text(value)
        except ChainError:
            return None
    return None


def record_from_receipt(tx_hash: str, receipt: dict[str, Any]) -> TransactionRecord:
    return TransactionRecord(
        tx_hash=tx_hash,
        status=TxStatus.CONFIRMED if receipt_succeeded(receipt) else TxStatus.FAILED,
        block_number=_receipt_uint(receipt, "blockNumber"),
        gas_used=_receipt_uint(receipt, "gasUsed"),
        effective_gas_price=_receipt_uint(receipt, "effectiveGasPrice"),
    )


class ConfirmationWaiter:
    def __init__(self, chain: ChainClient):
        self._chain = chain

    async def wait(self, tx_hash: str) -> TransactionRecord:
        """Wait for tx_hash to be included; raise ConfirmationError unless it succeeded."""
        try:
            receipt = await self._chain.wait_for_receipt(tx_hash)
        except ChainTimeout as exc:
            raise ConfirmationError(
                "Timed out waiting for on-chain receipt.",
                tx_hash=tx_hash,
                action_hint="Tx may still be pending. Check the explorer later before retrying.",
                details={"timeoutSec": exc.timeout_sec},
            ) from exc
        except ChainError as exc:
            raise ConfirmationError(f"Receipt lookup failed: {exc}", tx_hash=tx_hash) from exc

        record = record_from_receipt(tx_hash, receipt)
        if record.status is not TxStatus.CONFIRMED:
            status = str(receipt.get("status", "0x0")).lower()
            raise ConfirmationError(f"On-chain receipt indicates failure status '{status}'.", tx_hash=tx_hash)
        return record
