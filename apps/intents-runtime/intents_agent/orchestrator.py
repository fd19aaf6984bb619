"""Intent run state machine.

One run walks START -> PREVIEWED -> ALLOWANCE_SKIPPED | ALLOWANCE_APPROVED ->
SUBMITTED -> CONFIRMED -> REPORTED. The first error moves it to FAILED and is
turned into a FailureReport; nothing is retried or rolled back.

Runs for the same signer address are serialized so that their transactions
never race for a nonce. Runs for different signers proceed concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Union

from .allowance import AllowanceGuard
from .chain import CastChainClient, ChainClient
from .config import RuntimeConfig
from .confirmation import ConfirmationWaiter, TransactionRecord
from .errors import IntentsError, UnknownError
from .executor import IntentExecutor
from .preview import IntentPreviewer, PreviewResult
from .report import ExecutionReport, FailureReport, format_success
from .signer import Signer

logger = logging.getLogger(__name__)

Outcome = Union[ExecutionReport, FailureReport]


class RunState(str, enum.Enum):
    START = "start"
    PREVIEWED = "previewed"
    ALLOWANCE_SKIPPED = "allowance_skipped"
    ALLOWANCE_APPROVED = "allowance_approved"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REPORTED = "reported"
    FAILED = "failed"


_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.START: {RunState.PREVIEWED},
    RunState.PREVIEWED: {RunState.ALLOWANCE_SKIPPED, RunState.ALLOWANCE_APPROVED},
    RunState.ALLOWANCE_SKIPPED: {RunState.SUBMITTED},
    RunState.ALLOWANCE_APPROVED: {RunState.SUBMITTED},
    RunState.SUBMITTED: {RunState.CONFIRMED},
    RunState.CONFIRMED: {RunState.REPORTED},
    RunState.REPORTED: set(),
    RunState.FAILED: set(),
}


@dataclass
class IntentRun:
    signer_address: str
    intent: str
    run_id: str = field(default_factory=lambda: f"run_{uuid.uuid4().hex[:12]}")
    state: RunState = RunState.START
    history: list[RunState] = field(default_factory=lambda: [RunState.START])
    preview: PreviewResult | None = None
    approve_tx_hash: str | None = None
    tx_hash: str | None = None
    record: TransactionRecord | None = None
    error: IntentsError | None = None
    outcome: Outcome | None = None
    # Set once a transaction may have reached the chain; from then on the run
    # must finish even if the caller is cancelled.
    committed: bool = False

    @property
    def terminal(self) -> bool:
        return self.state in (RunState.REPORTED, RunState.FAILED)

    def advance(self, target: RunState) -> None:
        allowed = _TRANSITIONS[self.state]
        if target is RunState.FAILED and not self.terminal:
            allowed = allowed | {RunState.FAILED}
        if target not in allowed:
            raise UnknownError(f"Invalid run transition {self.state.value} -> {target.value}.")
        logger.debug("%s: %s -> %s", self.run_id, self.state.value, target.value)
        self.state = target
        self.history.append(target)

    def mark_committed(self) -> None:
        self.committed = True


class IntentOrchestrator:
    def __init__(
        self,
        config: RuntimeConfig,
        previewer: IntentPreviewer,
        guard: AllowanceGuard,
        executor: IntentExecutor,
        waiter: ConfirmationWaiter,
    ):
        self._config = config
        self._previewer = previewer
        self._guard = guard
        self._executor = executor
        self._waiter = waiter
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @classmethod
    def from_config(cls, config: RuntimeConfig, chain: ChainClient | None = None) -> "IntentOrchestrator":
        chain = chain if chain is not None else CastChainClient(config)
        waiter = ConfirmationWaiter(chain)
        return cls(
            config,
            previewer=IntentPreviewer(chain, config),
            guard=AllowanceGuard(chain, waiter, config),
            executor=IntentExecutor(chain, config),
            waiter=waiter,
        )

    @contextlib.asynccontextmanager
    async def _serialized(self, address: str) -> AsyncIterator[None]:
        key = address.lower()
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def preview(self, signer: Signer, intent: str) -> PreviewResult:
        """Read-only preview; no allowance or transaction step runs."""
        return await self._previewer.preview(signer.address, intent)

    async def execute(self, signer: Signer, intent: str) -> Outcome:
        run = await self.execute_run(signer, intent)
        if run.outcome is None:
            raise UnknownError(f"{run.run_id} ended in state {run.state.value} without an outcome.")
        return run.outcome

    async def execute_run(self, signer: Signer, intent: str) -> IntentRun:
        async with self._serialized(signer.address):
            run = IntentRun(signer_address=signer.address, intent=intent)
            task = asyncio.ensure_future(self._drive(run, signer))
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not run.committed:
                    task.cancel()
                    await _settle(task)
                    raise
                # A transaction is already on its way; finish the run so the
                # signer is not released while it is still pending.
                logger.warning("%s cancelled after broadcast; waiting for terminal state", run.run_id)
                await _settle(task)
                raise
            return run

    async def _drive(self, run: IntentRun, signer: Signer) -> IntentRun:
        try:
            preview = await self._previewer.preview(signer.address, run.intent)
            run.preview = preview
            run.advance(RunState.PREVIEWED)

            value = preview.amount if preview.is_native else 0
            approve_tx_hash = await self._guard.ensure(
                signer,
                preview.token,
                preview.amount,
                on_broadcast=run.mark_committed,
            )
            run.approve_tx_hash = approve_tx_hash
            run.advance(RunState.ALLOWANCE_APPROVED if approve_tx_hash else RunState.ALLOWANCE_SKIPPED)

            run.mark_committed()
            run.tx_hash = await self._executor.submit(signer, run.intent, value)
            run.advance(RunState.SUBMITTED)

            run.record = await self._waiter.wait(run.tx_hash)
            run.advance(RunState.CONFIRMED)

            run.outcome = format_success(
                preview,
                run.record,
                explorer_base_url=self._config.explorer_base_url,
                explorer_name=self._config.explorer_name,
                approve_tx_hash=approve_tx_hash,
            )
            run.advance(RunState.REPORTED)
            logger.info("%s reported tx %s", run.run_id, run.tx_hash)
        except IntentsError as exc:
            self._fail(run, exc)
        except Exception as exc:
            logger.exception("%s failed with an unclassified error", run.run_id)
            msg = (str(exc) or "").strip() or f"{type(exc).__name__}: (no message)"
            self._fail(run, UnknownError(msg, details={"exceptionType": type(exc).__name__}))
        return run

    def _fail(self, run: IntentRun, exc: IntentsError) -> None:
        reached = run.state
        details = dict(exc.details)
        if run.approve_tx_hash:
            details.setdefault("approveTxHash", run.approve_tx_hash)
        if run.tx_hash:
            details.setdefault("txHash", run.tx_hash)
        run.error = exc
        if not run.terminal:
            run.advance(RunState.FAILED)
        run.outcome = FailureReport(
            error_kind=type(exc).__name__,
            code=exc.code,
            message=str(exc),
            state=reached.value,
            action_hint=exc.action_hint,
            details=details,
        )
        logger.warning("%s failed in state %s: %s: %s", run.run_id, reached.value, type(exc).__name__, exc)


async def _settle(task: asyncio.Future) -> None:
    while not task.done():
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            continue
