"""
Submission Gateway
==================
Submits a signed plan through the atomic channel (one bundle) or the
standard channel (one transaction at a time) and returns a uniform
SubmissionResult.

The "Pilot" of the orchestration pipeline.

Responsibilities:
- Write-ahead: a compensation record per side effect of every attempted
  transaction is appended BEFORE the network call; the outcome
  (landed / failed / unknown) is appended after
- Atomic path: submit once, poll bundle status, never report partial success
- Sequential path: send in group order, confirm each before the next,
  stop at the first failure and report exactly which groups landed
- Duplicate detection: a group already confirmed for this operation is
  never resent
"""

from __future__ import annotations

import asyncio
import base64
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config.settings import Settings
from splforge.execution.schemas import (
    BundlePlan,
    CompensationRecord,
    ExecutionContext,
    SignedTransaction,
    SubmissionOutcome,
)
from splforge.shared.execution.execution_result import (
    BundleStatus,
    ErrorKind,
    OrchestrationError,
    SubmissionError,
    SubmissionMethod,
    SubmissionResult,
    TxState,
    TxStatus,
    as_orchestration_error,
    classify_message,
)
from splforge.shared.system.logging import Logger


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GatewayConfig:
    """Confirmation polling ceilings."""

    confirmation_max_polls: int = Settings.CONFIRMATION_MAX_POLLS
    poll_interval_sec: float = Settings.CONFIRMATION_POLL_INTERVAL_S
    bundle_status_polls: int = Settings.BUNDLE_STATUS_POLLS
    bundle_status_interval_sec: float = Settings.BUNDLE_STATUS_INTERVAL_S


# ═══════════════════════════════════════════════════════════════════════════════
# SUBMISSION GATEWAY
# ═══════════════════════════════════════════════════════════════════════════════

class SubmissionGateway:
    """
    Usage:
        gateway = SubmissionGateway(channel, ledger, atomic_channel=jito)
        result = await gateway.submit(plan, ctx)
    """

    def __init__(
        self,
        channel: Any,
        ledger: Any,
        atomic_channel: Any = None,
        config: Optional[GatewayConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.channel = channel
        self.ledger = ledger
        self.atomic_channel = atomic_channel
        self.config = config or GatewayConfig()
        self._sleep = sleep

        # operation_id -> group_index -> signatures ever sent for that group
        self._sent: Dict[str, Dict[int, List[str]]] = defaultdict(lambda: defaultdict(list))
        # operation_id -> confirmed signatures
        self._confirmed: Dict[str, set] = defaultdict(set)

        # Statistics
        self._bundles = 0
        self._transactions = 0
        self._landed = 0
        self._failures = 0
        self._timeouts = 0

    async def submit(self, plan: BundlePlan, ctx: ExecutionContext) -> SubmissionResult:
        start_time = time.time()
        if plan.atomic:
            result = await self._submit_atomic(plan, ctx)
        else:
            result = await self._submit_sequential(plan, ctx)
        result.latency_ms = (time.time() - start_time) * 1000
        if not result.success:
            self._failures += 1
        return result

    def forget(self, operation_id: str) -> None:
        self._sent.pop(operation_id, None)
        self._confirmed.pop(operation_id, None)

    # ═══════════════════════════════════════════════════════════════════
    # WRITE-AHEAD
    # ═══════════════════════════════════════════════════════════════════

    async def _write_ahead(self, tx: SignedTransaction, ctx: ExecutionContext, method: SubmissionMethod) -> None:
        for effect in tx.effects:
            await self.ledger.add_record(ctx.operation_id, CompensationRecord(
                record_id=f"rec_{uuid.uuid4().hex[:12]}",
                operation_id=ctx.operation_id,
                group_index=tx.group_index,
                group_label=tx.label,
                signature=tx.signature,
                effect=effect,
                method=method.value,
                attempt=ctx.attempt,
            ))
        self._sent[ctx.operation_id][tx.group_index].append(tx.signature)

    async def _record(self, ctx: ExecutionContext, signature: str, outcome: SubmissionOutcome,
                      error: Optional[str] = None) -> None:
        await self.ledger.record_outcome(ctx.operation_id, signature, outcome, error)
        if outcome == SubmissionOutcome.LANDED:
            self._confirmed[ctx.operation_id].add(signature)
            self._landed += 1

    # ═══════════════════════════════════════════════════════════════════
    # ATOMIC PATH
    # ═══════════════════════════════════════════════════════════════════

    async def _submit_atomic(self, plan: BundlePlan, ctx: ExecutionContext) -> SubmissionResult:
        def failed(error: OrchestrationError) -> SubmissionResult:
            return SubmissionResult(success=False, method=SubmissionMethod.ATOMIC, error=error)

        if self.atomic_channel is None or not await self.atomic_channel.is_available():
            return failed(SubmissionError(
                ErrorKind.ATOMIC_CHANNEL_UNAVAILABLE, "Atomic channel not reachable",
            ))

        for tx in plan.transactions:
            await self._write_ahead(tx, ctx, SubmissionMethod.ATOMIC)

        signatures = plan.signatures
        serialized = [
            base64.b64encode(bytes(tx.transaction)).decode("utf-8") for tx in plan.transactions
        ]
        self._bundles += 1
        try:
            bundle_id = await self.atomic_channel.submit_bundle(serialized)
        except Exception as e:
            error = as_orchestration_error(e)
            for sig in signatures:
                await self._record(ctx, sig, SubmissionOutcome.FAILED, error.message)
            Logger.warning(f"[GATEWAY] Bundle submit failed ({error.kind.value}): {error.message}")
            return failed(error)

        status = await self._wait_for_bundle(bundle_id)

        if status is None:
            # Bundle status unknown: look for the first transaction on chain
            first = await self._safe_status(signatures[0])
            status = BundleStatus.LANDED if first is not None and first.landed else None

        if status == BundleStatus.LANDED:
            for sig in signatures:
                await self._record(ctx, sig, SubmissionOutcome.LANDED)
            Logger.success(f"[GATEWAY] Bundle landed: {len(signatures)} tx ({bundle_id[:16]}...)")
            return SubmissionResult(
                success=True,
                method=SubmissionMethod.ATOMIC,
                ids=signatures,
                bundle_id=bundle_id,
                landed_groups=[tx.group_index for tx in plan.transactions],
                attempted_groups=[tx.group_index for tx in plan.transactions],
            )

        if status is None:
            self._timeouts += 1
            for sig in signatures:
                await self._record(ctx, sig, SubmissionOutcome.UNKNOWN, "bundle status timeout")
            error = SubmissionError(
                ErrorKind.CONFIRMATION_TIMEOUT,
                f"Bundle {bundle_id[:16]}... not confirmed after {self.config.bundle_status_polls} polls",
                {"bundle_id": bundle_id},
            )
        else:
            for sig in signatures:
                await self._record(ctx, sig, SubmissionOutcome.FAILED, f"bundle {status.value}")
            error = SubmissionError(
                ErrorKind.BUNDLE_REJECTED,
                f"Bundle {status.value}: {bundle_id[:16]}...",
                {"bundle_id": bundle_id, "status": status.value},
            )

        Logger.warning(f"[GATEWAY] {error.message}")
        result = failed(error)
        result.bundle_id = bundle_id
        result.attempted_groups = [tx.group_index for tx in plan.transactions]
        return result

    async def _wait_for_bundle(self, bundle_id: str) -> Optional[BundleStatus]:
        """Poll bundle status; None on timeout."""
        for _ in range(self.config.bundle_status_polls):
            try:
                status = await self.atomic_channel.get_bundle_status(bundle_id)
            except OrchestrationError as e:
                Logger.debug(f"[GATEWAY] Bundle status check error: {e.message}")
                status = BundleStatus.PENDING
            if status in (BundleStatus.LANDED, BundleStatus.FAILED, BundleStatus.INVALID):
                return status
            await self._sleep(self.config.bundle_status_interval_sec)
        return None

    # ═══════════════════════════════════════════════════════════════════
    # SEQUENTIAL PATH
    # ═══════════════════════════════════════════════════════════════════

    async def _submit_sequential(self, plan: BundlePlan, ctx: ExecutionContext) -> SubmissionResult:
        result = SubmissionResult(success=False, method=SubmissionMethod.SEQUENTIAL)

        for tx in plan.transactions:
            index = tx.group_index
            try:
                prior = await self._find_landed_prior(ctx, index)
            except Exception as e:
                result.error = as_orchestration_error(e)
                return result
            if prior is not None:
                Logger.info(f"[GATEWAY] Group {index} ({tx.label}) already landed as {prior[:16]}...; not resending")
                result.landed_groups.append(index)
                result.ids.append(prior)
                continue

            await self._write_ahead(tx, ctx, SubmissionMethod.SEQUENTIAL)
            result.attempted_groups.append(index)
            self._transactions += 1

            try:
                await self.channel.send_transaction(tx.transaction)
            except Exception as e:
                error = as_orchestration_error(e)
                # A transport failure may still have delivered the transaction
                outcome = (
                    SubmissionOutcome.UNKNOWN if error.kind == ErrorKind.TRANSPORT_ERROR
                    else SubmissionOutcome.FAILED
                )
                await self._record(ctx, tx.signature, outcome, error.message)
                Logger.warning(f"[GATEWAY] Group {index} ({tx.label}) send failed: {error.kind.value}")
                result.error = error
                return result

            try:
                status = await self.wait_for_confirmation(tx.signature)
            except Exception as e:
                await self._record(ctx, tx.signature, SubmissionOutcome.UNKNOWN, str(e))
                result.error = as_orchestration_error(e)
                return result

            if status is not None and status.landed:
                await self._record(ctx, tx.signature, SubmissionOutcome.LANDED)
                result.landed_groups.append(index)
                result.ids.append(tx.signature)
                Logger.info(f"[GATEWAY] Group {index} ({tx.label}) landed: {tx.signature[:16]}...")
                continue

            if status is None:
                self._timeouts += 1
                await self._record(ctx, tx.signature, SubmissionOutcome.UNKNOWN, "confirmation timeout")
                result.error = SubmissionError(
                    ErrorKind.CONFIRMATION_TIMEOUT,
                    f"Group {index} ({tx.label}) not confirmed after {self.config.confirmation_max_polls} polls",
                    {"signature": tx.signature, "group": index},
                )
            else:
                await self._record(ctx, tx.signature, SubmissionOutcome.FAILED, status.error)
                kind = classify_message(status.error or "")
                if kind == ErrorKind.UNKNOWN:
                    kind = ErrorKind.PROGRAM_ERROR
                result.error = SubmissionError(
                    kind,
                    f"Group {index} ({tx.label}) failed on chain: {status.error}",
                    {"signature": tx.signature, "group": index},
                )
            Logger.warning(f"[GATEWAY] {result.error.message}")
            return result

        result.success = True
        return result

    async def _find_landed_prior(self, ctx: ExecutionContext, group_index: int) -> Optional[str]:
        """A previously sent signature for this group that is confirmed on chain."""
        confirmed = self._confirmed[ctx.operation_id]
        for signature in self._sent[ctx.operation_id].get(group_index, []):
            if signature in confirmed:
                return signature
            status = await self.channel.get_signature_status(signature)
            if status.landed:
                await self._record(ctx, signature, SubmissionOutcome.LANDED)
                return signature
        return None

    async def wait_for_confirmation(self, signature: str) -> Optional[TxStatus]:
        """Poll until confirmed or failed; None after the poll ceiling."""
        for _ in range(self.config.confirmation_max_polls):
            status = await self.channel.get_signature_status(signature)
            if status.state in (TxState.CONFIRMED, TxState.FAILED):
                return status
            await self._sleep(self.config.poll_interval_sec)
        return None

    async def _safe_status(self, signature: str) -> Optional[TxStatus]:
        try:
            return await self.channel.get_signature_status(signature)
        except Exception as e:
            Logger.debug(f"[GATEWAY] On-chain check failed for {signature[:16]}...: {e}")
            return None

    def get_stats(self) -> dict:
        return {
            "bundles": self._bundles,
            "transactions": self._transactions,
            "landed": self._landed,
            "failures": self._failures,
            "timeouts": self._timeouts,
        }
