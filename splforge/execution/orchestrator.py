"""
Orchestrator
============
Entry point that wires the pipeline and owns the Operation lifecycle.

    params -> Validator -> Builder (+ Coordinator) -> Controller
           -> Bundler -> Gateway -> Ledger (complete | rollback)

The "Conductor" of the orchestration pipeline.

Responsibilities:
- Explicit construction from collaborators (no process-wide singletons)
- Status transitions, checkpoints and change log per operation
- Progress events for observers
- Rollback on terminal failure; structured result for the caller

Usage:
    orchestrator = Orchestrator.from_settings()
    result = await orchestrator.execute(AssetCreationParams(payer, "Demo", "DMO", 9, 1000))
    if not result.success:
        for action in result.manual_actions:
            print(action.detail)
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey

from config.settings import Settings
from splforge.execution.bundle_submitter import GatewayConfig, SubmissionGateway
from splforge.execution.compensation_ledger import CompensationLedger, RollbackReport
from splforge.execution.instruction_factory import InstructionGroupBuilder
from splforge.execution.multi_wallet_coordinator import MultiWalletCoordinator
from splforge.execution.precondition_validator import PreconditionValidator
from splforge.execution.retry_controller import RetryController
from splforge.execution.schemas import (
    CancellationToken,
    ExecutionContext,
    InstructionGroup,
    Operation,
    OperationStatus,
)
from splforge.execution.transaction_bundler import TransactionBundler
from splforge.shared.execution.execution_result import (
    COLLABORATOR_ERRORS,
    ErrorKind,
    OperationResult,
    OrchestrationError,
    SigningError,
    SubmissionError,
    as_orchestration_error,
)
from splforge.shared.execution.retry_policy import RetryPolicy
from splforge.shared.system.logging import Logger
from splforge.shared.system.progress_bus import ProgressBus, ProgressEvent, ProgressStage


class Orchestrator:
    def __init__(
        self,
        channel: Any,
        signer: Any,
        encoder: Any,
        atomic_channel: Any = None,
        metadata_store: Any = None,
        policies: Optional[Mapping[ErrorKind, RetryPolicy]] = None,
        progress: Optional[ProgressBus] = None,
        gateway_config: Optional[GatewayConfig] = None,
        fee_micro_lamports: Optional[int] = None,
        tip_lamports: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.channel = channel
        self.signer = signer
        self.encoder = encoder
        self.atomic_channel = atomic_channel
        self.progress = progress or ProgressBus()
        self.fee_micro_lamports = fee_micro_lamports or Settings.DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS
        self.tip_lamports = tip_lamports or Settings.DEFAULT_TIP_LAMPORTS

        self.validator = PreconditionValidator(channel)
        self.coordinator = MultiWalletCoordinator(channel, encoder, self.validator)
        self.builder = InstructionGroupBuilder(encoder, channel, self.coordinator)
        self.bundler = TransactionBundler(
            channel, signer, encoder, atomic_enabled=atomic_channel is not None,
        )
        self.ledger = CompensationLedger(
            channel, encoder, metadata_store, executor=self._send_compensation,
        )
        self.gateway = SubmissionGateway(
            channel, self.ledger, atomic_channel, config=gateway_config, sleep=sleep,
        )
        self.controller = RetryController(
            self.bundler, self.gateway, policies=policies, progress=self.progress,
            sleep=sleep, rng=rng,
        )

        self._operations: Dict[str, Operation] = {}

    @classmethod
    def from_settings(cls, keypairs: Optional[Sequence[Keypair]] = None, **overrides: Any) -> "Orchestrator":
        """Build the default collaborator set from environment settings."""
        from splforge.shared.infrastructure.jito_adapter import JitoAdapter
        from splforge.shared.infrastructure.metadata_store import MetadataStoreClient
        from splforge.shared.infrastructure.rpc_channel import SolanaRpcChannel
        from splforge.shared.infrastructure.signer import KeypairSigningService
        from splforge.shared.infrastructure.spl_encoder import SplInstructionEncoder

        signer = KeypairSigningService(keypairs) if keypairs else KeypairSigningService.from_env()
        atomic = JitoAdapter(Settings.JITO_REGION, Settings.NETWORK) if Settings.atomic_channel_enabled() else None
        metadata_store = MetadataStoreClient() if Settings.METADATA_STORE_URL else None

        Logger.info(
            f"[ORCHESTRATOR] {Settings.NETWORK} via {Settings.RPC_URL} "
            f"(atomic channel: {'jito/' + Settings.JITO_REGION if atomic else 'off'})"
        )
        return cls(
            channel=SolanaRpcChannel(Settings.RPC_URL),
            signer=signer,
            encoder=SplInstructionEncoder(),
            atomic_channel=atomic,
            metadata_store=metadata_store,
            **overrides,
        )

    # ═══════════════════════════════════════════════════════════════════
    # EXECUTE
    # ═══════════════════════════════════════════════════════════════════

    async def execute(self, params: Any, cancel_token: Optional[CancellationToken] = None) -> OperationResult:
        if params is None:
            raise TypeError("execute() requires operation params, got None")

        operation = Operation(kind=getattr(params, "kind", None), params=params)
        self._operations[operation.operation_id] = operation
        ctx = ExecutionContext(
            operation_id=operation.operation_id,
            fee_micro_lamports=self.fee_micro_lamports,
            tip_lamports=self.tip_lamports,
            cancel_token=cancel_token or CancellationToken(),
        )
        kind_name = operation.kind.value if operation.kind else type(params).__name__
        Logger.section(f"Operation {operation.operation_id} ({kind_name})")

        # Validation
        self._transition(operation, OperationStatus.VALIDATING)
        try:
            report = await self.validator.validate(params)
        except COLLABORATOR_ERRORS as e:
            return self._fail(operation, ctx, as_orchestration_error(e))
        if not report.ok:
            return self._fail(operation, ctx, report.to_error())
        self._emit(ProgressStage.VALIDATED, operation)

        if ctx.cancel_token.cancelled:
            return self._cancel(operation, ctx)

        # Build
        self._transition(operation, OperationStatus.EXECUTING)
        try:
            groups = await self.builder.build(params)
        except COLLABORATOR_ERRORS as e:
            return self._fail(operation, ctx, as_orchestration_error(e))
        self._emit(
            ProgressStage.GROUPS_BUILT, operation,
            groups=[g.label for g in groups],
        )
        artifacts = _merge_artifacts(groups)

        await self.ledger.track_operation(
            operation.operation_id,
            operation.kind,
            ctx,
            payer=params.payer,
            multi_participant=bool(getattr(params, "participants", None)),
            signers=[kp for g in groups for kp in g.co_signers],
        )

        # Submit
        try:
            outcome = await self.controller.run(groups, params.payer, ctx)
        except SigningError as e:
            Logger.error(f"[ORCHESTRATOR] Signing failed: {e.message}")
            if self.ledger.has_landed(operation.operation_id):
                self._transition(operation, OperationStatus.FAILED, kind=e.kind.value)
                rollback = await self._rollback(operation)
                return self._result(operation, ctx, error=e, rollback=rollback, artifacts=artifacts)
            return self._fail(operation, ctx, e, artifacts=artifacts)
        except Exception as e:
            error = as_orchestration_error(e)
            Logger.error(
                f"[ORCHESTRATOR] {operation.operation_id} submission aborted: "
                f"{type(e).__name__}: {e}"
            )
            self._transition(operation, OperationStatus.FAILED, kind=error.kind.value, details=error.details)
            rollback = await self._rollback(operation)
            return self._result(operation, ctx, error=error, rollback=rollback, artifacts=artifacts)

        result_kwargs = dict(
            method=outcome.result.method,
            ids=outcome.result.ids,
            attempts=outcome.attempts,
            landed_groups=outcome.result.landed_groups,
            artifacts=artifacts,
        )

        if outcome.success:
            await self.ledger.mark_complete(operation.operation_id)
            self.gateway.forget(operation.operation_id)
            self._transition(operation, OperationStatus.COMPLETED, ids=outcome.result.ids)
            Logger.success(
                f"[ORCHESTRATOR] {operation.operation_id} completed via "
                f"{outcome.result.method.value}: {len(outcome.result.ids)} tx"
            )
            return self._result(operation, ctx, success=True, **result_kwargs)

        if outcome.cancelled:
            self._transition(operation, OperationStatus.CANCELLED, landed_groups=outcome.result.landed_groups)
            return self._result(operation, ctx, error=outcome.error, **result_kwargs)

        self._transition(operation, OperationStatus.FAILED, kind=outcome.error.kind.value)
        rollback = await self._rollback(operation)
        return self._result(operation, ctx, error=outcome.error, rollback=rollback, **result_kwargs)

    # ═══════════════════════════════════════════════════════════════════
    # ROLLBACK & HISTORY
    # ═══════════════════════════════════════════════════════════════════

    async def rollback(self, operation_id: str) -> RollbackReport:
        """Run (or replay) compensation for a failed or cancelled operation."""
        operation = self._get(operation_id)
        if operation.status not in (OperationStatus.FAILED, OperationStatus.CANCELLED):
            raise ValueError(
                f"Operation {operation_id} is {operation.status.value}; only failed or cancelled "
                f"operations can be rolled back"
            )
        if not self.ledger.is_tracked(operation_id):
            return RollbackReport(operation_id, operation.kind)
        return await self._rollback(operation)

    async def _rollback(self, operation: Operation) -> RollbackReport:
        report = await self.ledger.rollback(operation.operation_id)
        operation.log("rollback", **report.to_dict())
        self._emit(
            ProgressStage.ROLLBACK, operation,
            actions=len(report.actions),
            manual=len(report.manual_actions),
            fully_resolved=report.fully_resolved,
        )
        if report.fully_resolved and operation.status == OperationStatus.FAILED:
            self._transition(operation, OperationStatus.ROLLED_BACK)
        elif not report.fully_resolved:
            Logger.warning(
                f"[ORCHESTRATOR] {operation.operation_id}: rollback incomplete "
                f"({len(report.unverified)} unverified, {len(report.failed)} failed); replay later"
            )
        return report

    def get_operation_history(self, operation_id: str) -> Dict[str, Any]:
        operation = self._get(operation_id)
        return {
            "operation_id": operation.operation_id,
            "kind": operation.kind.value if operation.kind else None,
            "status": operation.status.value,
            "created_at": operation.created_at,
            "updated_at": operation.updated_at,
            "checkpoints": list(operation.checkpoints),
            "change_log": list(operation.change_log),
        }

    def get_operation(self, operation_id: str) -> Operation:
        return self._get(operation_id)

    def _get(self, operation_id: str) -> Operation:
        operation = self._operations.get(operation_id)
        if operation is None:
            raise KeyError(f"Unknown operation {operation_id}")
        return operation

    # ═══════════════════════════════════════════════════════════════════
    # COMPENSATION EXECUTOR
    # ═══════════════════════════════════════════════════════════════════

    async def _send_compensation(self, payer: str, instructions: list, co_signers: Sequence[Keypair]) -> str:
        """Sign, send and confirm one compensating transaction."""
        blockhash = await self.channel.get_latest_blockhash()
        ixs = self.encoder.compute_budget(self.fee_micro_lamports) + list(instructions)
        message = MessageV0.try_compile(Pubkey.from_string(payer), ixs, [], blockhash)
        tx = await self.bundler.sign_message(message, co_signers)
        signature = await self.channel.send_transaction(tx)
        status = await self.gateway.wait_for_confirmation(signature)
        if status is None:
            raise SubmissionError(ErrorKind.CONFIRMATION_TIMEOUT, f"Compensation {signature[:16]}... not confirmed")
        if not status.landed:
            raise SubmissionError(ErrorKind.PROGRAM_ERROR, f"Compensation failed: {status.error}")
        return signature

    # ═══════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════

    def _emit(self, stage: ProgressStage, operation: Operation, **data: Any) -> None:
        self.progress.emit(ProgressEvent(stage, operation.operation_id, data))

    def _transition(self, operation: Operation, status: OperationStatus, **data: Any) -> None:
        previous = operation.status
        operation.transition(status, **data)
        Logger.debug(f"[ORCHESTRATOR] {operation.operation_id}: {previous.value} -> {status.value}")
        self._emit(ProgressStage.STATUS_CHANGED, operation, previous=previous.value, status=status.value)

    def _fail(self, operation: Operation, ctx: ExecutionContext, error: OrchestrationError,
              **kwargs: Any) -> OperationResult:
        """Terminal failure before anything landed: no rollback."""
        Logger.warning(f"[ORCHESTRATOR] {operation.operation_id} failed: {error.kind.value}: {error.message}")
        self._transition(operation, OperationStatus.FAILED, kind=error.kind.value, details=error.details)
        return self._result(operation, ctx, error=error, **kwargs)

    def _cancel(self, operation: Operation, ctx: ExecutionContext) -> OperationResult:
        reason = ctx.cancel_token.reason or "cancelled"
        self._transition(operation, OperationStatus.CANCELLED, reason=reason)
        return self._result(operation, ctx, error=OrchestrationError(
            ErrorKind.UNKNOWN, f"Operation cancelled: {reason}", {"cancelled": True},
        ))

    def _result(self, operation: Operation, ctx: ExecutionContext, success: bool = False,
                **kwargs: Any) -> OperationResult:
        return OperationResult(
            success=success,
            operation_id=operation.operation_id,
            status=operation.status.value,
            fee_micro_lamports=ctx.fee_micro_lamports,
            tip_lamports=ctx.tip_lamports,
            **kwargs,
        )

    def get_stats(self) -> dict:
        statuses: Dict[str, int] = {}
        for op in self._operations.values():
            statuses[op.status.value] = statuses.get(op.status.value, 0) + 1
        return {
            "operations": statuses,
            "bundler": self.bundler.get_stats(),
            "gateway": self.gateway.get_stats(),
            "controller": self.controller.get_stats(),
            "ledger": self.ledger.get_stats(),
        }


def _merge_artifacts(groups: List[InstructionGroup]) -> Dict[str, str]:
    artifacts: Dict[str, str] = {}
    for group in groups:
        artifacts.update(group.artifacts)
    return artifacts
