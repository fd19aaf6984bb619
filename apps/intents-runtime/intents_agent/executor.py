from __future__ import annotations

from .chain import ChainClient
from .config import COMMAND_SIGNATURE, RuntimeConfig
from .errors import ChainError, ExecutionError
from .signer import Signer


class IntentExecutor:
    def __init__(self, chain: ChainClient, config: RuntimeConfig):
        self._chain = chain
        self._config = config

    async def submit(self, signer: Signer, intent: str, value: int) -> str:
        """Broadcast `command(intent)` and return the hash without waiting for a receipt."""
        if value < 0:
            raise ExecutionError("Transaction value must not be negative.")
        try:
            data = await self._chain.calldata(COMMAND_SIGNATURE, [intent])
            return await self._chain.send_transaction(
                {
                    "from": signer.address,
                    "to": self._config.contract_address,
                    "data": data,
                    "value": str(value),
                },
                signer.key_for_cast,
            )
        except ChainError as exc:
            raise ExecutionError(f"Command transaction failed: {exc}", details={"value": str(value)}) from exc
