from __future__ import annotations

import logging
from typing import Callable

from .chain import ChainClient, parse_uint_text
from .config import ALLOWANCE_SIGNATURE, APPROVE_SIGNATURE, MAX_UINT256, RuntimeConfig
from .confirmation import ConfirmationWaiter
from .errors import AllowanceError, ChainError, ConfirmationError
from .signer import Signer

logger = logging.getLogger(__name__)


class AllowanceGuard:
    """Make sure the command contract may spend the signer's tokens.

    Native-currency intents carry their value on the command transaction, so
    they never need an allowance. For tokens, the allowance is read fresh and
    an approval for MAX_UINT256 is sent (and confirmed) only when it is below
    the required amount.
    """

    def __init__(self, chain: ChainClient, waiter: ConfirmationWaiter, config: RuntimeConfig):
        self._chain = chain
        self._waiter = waiter
        self._config = config

    async def current_allowance(self, owner: str, token: str) -> int:
        try:
            values = await self._chain.call(token, ALLOWANCE_SIGNATURE, [owner, self._config.contract_address])
            if not values:
                raise ChainError("allowance call returned no value.")
            return parse_uint_text(values[-1])
        except ChainError as exc:
            raise AllowanceError(f"Allowance read failed: {exc}", details={"token": token}) from exc

    async def ensure(
        self,
        signer: Signer,
        token: str,
        required: int,
        on_broadcast: Callable[[], None] | None = None,
    ) -> str | None:
        """Return the approval tx hash if one was sent, else None.

        on_broadcast is invoked right before the approval is handed to the chain.
        """
        if token.lower() == self._config.native_token.lower():
            return None

        allowance = await self.current_allowance(signer.address, token)
        if allowance >= required:
            logger.debug("allowance %s >= %s for token %s; no approval needed", allowance, required, token)
            return None

        try:
            data = await self._chain.calldata(APPROVE_SIGNATURE, [self._config.contract_address, str(MAX_UINT256)])
            if on_broadcast is not None:
                on_broadcast()
            approve_tx_hash = await self._chain.send_transaction(
                {"from": signer.address, "to": token, "data": data},
                signer.key_for_cast,
            )
        except ChainError as exc:
            raise AllowanceError(f"Approve transaction failed: {exc}", details={"token": token}) from exc
        logger.info("approval %s sent for token %s (allowance %s < %s)", approve_tx_hash, token, allowance, required)

        try:
            await self._waiter.wait(approve_tx_hash)
        except ConfirmationError as exc:
            raise AllowanceError(
                f"Approve transaction did not confirm: {exc}",
                action_hint=exc.action_hint,
                details={"token": token, "approveTxHash": approve_tx_hash},
            ) from exc
        return approve_tx_hash
