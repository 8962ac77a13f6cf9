"""
Compensation Ledger
===================
Append-only record of every side effect an operation may have produced,
and the rollback strategies that undo (or flag) them.

The "Medic" of the orchestration pipeline.

Responsibilities:
- Track operations and their write-ahead compensation records
- Store submission outcomes alongside records (records never mutate)
- Verify unknown outcomes on chain before compensating
- Run per-effect rollback strategies and report per action
- Stay idempotent: resolved effects are skipped on replay

Strategies (per effect kind):
    metadata_registered  -> metadata store rollback hook (always, best effort)
    account_created      -> close empty token accounts, disable empty mints
    transfer / liquidity / minted / revoked / metadata_updated
                         -> requires manual action when landed
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from solders.keypair import Keypair

from splforge.execution.schemas import (
    AccountType,
    CompensationRecord,
    EffectKind,
    ExecutionContext,
    OperationKind,
    Reversibility,
    SubmissionOutcome,
)
from splforge.shared.execution.execution_result import TxState
from splforge.shared.system.logging import Logger


# executor(payer, instructions, co_signers) -> confirmed signature
CompensationExecutor = Callable[[str, list, Sequence[Keypair]], Awaitable[str]]

# Action statuses that leave the effect open for a later replay
OPEN_STATUSES = frozenset({"failed", "unresolved"})


# ═══════════════════════════════════════════════════════════════════════════════
# REPORT
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class RollbackAction:
    """Outcome of compensating one effect."""

    effect_key: str
    effect: str
    target: str
    wallet: str
    group_label: str
    action: str  # unpin_metadata, close_account, disable_mint, manual, no_action, verify
    status: str
    detail: str = ""
    signature: Optional[str] = None

    @property
    def is_manual(self) -> bool:
        return self.action == "manual"

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "effect_key": self.effect_key,
            "effect": self.effect,
            "target": self.target,
            "wallet": self.wallet,
            "group": self.group_label,
            "action": self.action,
            "status": self.status,
            "detail": self.detail,
            "signature": self.signature,
        }


@dataclass
class RollbackReport:
    operation_id: str
    kind: Optional[OperationKind] = None
    actions: List[RollbackAction] = field(default_factory=list)
    replayed: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def manual_actions(self) -> List[RollbackAction]:
        return [a for a in self.actions if a.is_manual]

    @property
    def unverified(self) -> List[RollbackAction]:
        return [a for a in self.actions if a.status == "unresolved"]

    @property
    def failed(self) -> List[RollbackAction]:
        return [a for a in self.actions if a.status == "failed"]

    @property
    def fully_resolved(self) -> bool:
        return not any(a.is_open for a in self.actions)

    def by_wallet(self) -> Dict[str, List[RollbackAction]]:
        grouped: Dict[str, List[RollbackAction]] = {}
        for action in self.actions:
            grouped.setdefault(action.wallet, []).append(action)
        return grouped

    def for_group(self, label: str) -> List[RollbackAction]:
        return [a for a in self.actions if a.group_label == label]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind.value if self.kind else None,
            "actions": [a.to_dict() for a in self.actions],
            "manual_actions": [a.to_dict() for a in self.manual_actions],
            "unverified": [a.to_dict() for a in self.unverified],
            "fully_resolved": self.fully_resolved,
            "replayed": self.replayed,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# LEDGER STATE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class _TrackedOperation:
    operation_id: str
    kind: OperationKind
    payer: str
    multi_participant: bool = False
    signers: Dict[str, Keypair] = field(default_factory=dict)  # in memory only
    records: List[CompensationRecord] = field(default_factory=list)
    outcomes: List[Dict[str, Any]] = field(default_factory=list)
    resolutions: Dict[str, RollbackAction] = field(default_factory=dict)
    completed: bool = False
    rollbacks: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def latest_outcome(self, signature: str) -> Optional[SubmissionOutcome]:
        for entry in reversed(self.outcomes):
            if entry["signature"] == signature:
                return entry["outcome"]
        return None


_OUTCOME_RANK = {
    SubmissionOutcome.LANDED: 2,
    SubmissionOutcome.UNKNOWN: 1,
    SubmissionOutcome.FAILED: 0,
}


# ═══════════════════════════════════════════════════════════════════════════════
# COMPENSATION LEDGER
# ═══════════════════════════════════════════════════════════════════════════════

class CompensationLedger:
    """
    Usage:
        ledger = CompensationLedger(channel, encoder, metadata_store, executor)
        await ledger.track_operation(op_id, OperationKind.ASSET_CREATION, ctx, payer=payer)
        ...
        report = await ledger.rollback(op_id)
    """

    def __init__(
        self,
        channel: Any,
        encoder: Any,
        metadata_store: Any = None,
        executor: Optional[CompensationExecutor] = None,
    ):
        self.channel = channel
        self.encoder = encoder
        self.metadata_store = metadata_store
        self.executor = executor
        self._operations: Dict[str, _TrackedOperation] = {}

        # Statistics
        self._records = 0
        self._rollbacks = 0
        self._compensations = 0
        self._compensation_failures = 0
        self._manual_flags = 0

    # ═══════════════════════════════════════════════════════════════════
    # TRACKING
    # ═══════════════════════════════════════════════════════════════════

    async def track_operation(
        self,
        operation_id: str,
        kind: OperationKind,
        ctx: Optional[ExecutionContext] = None,
        payer: str = "",
        multi_participant: bool = False,
        signers: Iterable[Keypair] = (),
    ) -> None:
        if operation_id in self._operations:
            raise ValueError(f"Operation {operation_id} is already tracked")
        self._operations[operation_id] = _TrackedOperation(
            operation_id=operation_id,
            kind=kind,
            payer=payer,
            multi_participant=multi_participant,
            signers={str(kp.pubkey()): kp for kp in signers},
        )
        Logger.debug(f"[LEDGER] Tracking {operation_id} ({kind.value})")

    def _get(self, operation_id: str) -> _TrackedOperation:
        entry = self._operations.get(operation_id)
        if entry is None:
            raise KeyError(f"Unknown operation {operation_id}")
        return entry

    def is_tracked(self, operation_id: str) -> bool:
        return operation_id in self._operations

    async def add_record(self, operation_id: str, record: CompensationRecord) -> None:
        entry = self._get(operation_id)
        if entry.completed:
            raise ValueError(f"Operation {operation_id} is already complete")
        entry.records.append(record)
        entry.updated_at = time.time()
        self._records += 1

    async def record_outcome(
        self,
        operation_id: str,
        signature: str,
        outcome: SubmissionOutcome,
        error: Optional[str] = None,
    ) -> None:
        entry = self._get(operation_id)
        entry.outcomes.append({
            "signature": signature,
            "outcome": outcome,
            "error": error,
            "timestamp": time.time(),
        })
        entry.updated_at = time.time()

    async def mark_complete(self, operation_id: str) -> None:
        entry = self._get(operation_id)
        entry.completed = True
        entry.signers.clear()
        entry.updated_at = time.time()
        Logger.debug(f"[LEDGER] {operation_id} complete ({len(entry.records)} record(s))")

    def has_landed(self, operation_id: str) -> bool:
        return any(o["outcome"] == SubmissionOutcome.LANDED for o in self._get(operation_id).outcomes)

    def get_records(self, operation_id: str) -> List[CompensationRecord]:
        return list(self._get(operation_id).records)

    def get_outcomes(self, operation_id: str) -> List[Dict[str, Any]]:
        return list(self._get(operation_id).outcomes)

    # ═══════════════════════════════════════════════════════════════════
    # ROLLBACK
    # ═══════════════════════════════════════════════════════════════════

    async def rollback(self, operation_id: str) -> RollbackReport:
        """
        Compensate every tracked effect of a failed operation.

        Safe to call repeatedly: resolved effects keep their first
        resolution; only open ones (failed / unresolved) are retried.
        """
        entry = self._get(operation_id)
        if entry.completed:
            raise ValueError(f"Operation {operation_id} completed; nothing to roll back")

        async with entry.lock:
            entry.rollbacks += 1
            report = RollbackReport(operation_id, entry.kind, replayed=entry.rollbacks > 1)

            # Latest group first
            by_key: Dict[str, List[CompensationRecord]] = {}
            for record in sorted(entry.records, key=lambda r: -r.group_index):
                by_key.setdefault(record.effect.key, []).append(record)

            if entry.multi_participant:
                buckets: Dict[str, List[str]] = {}
                for key, records in by_key.items():
                    buckets.setdefault(records[0].effect.wallet, []).append(key)
                ordered = [key for keys in buckets.values() for key in keys]
                Logger.info(f"[LEDGER] {operation_id}: rolling back {len(buckets)} wallet(s) independently")
            else:
                ordered = list(by_key)

            for key in ordered:
                previous = entry.resolutions.get(key)
                if previous is not None and not previous.is_open:
                    report.actions.append(previous)
                    continue
                action = await self._compensate(entry, by_key[key])
                entry.resolutions[key] = action
                report.actions.append(action)

            entry.updated_at = time.time()
            self._rollbacks += 1

        Logger.info(
            f"[LEDGER] Rollback {operation_id}: {len(report.actions)} action(s), "
            f"{len(report.manual_actions)} manual, {len(report.unverified)} unverified"
            f"{' (replay)' if report.replayed else ''}"
        )
        return report

    async def _resolve_outcome(self, entry: _TrackedOperation, records: List[CompensationRecord]) -> Optional[SubmissionOutcome]:
        """Best outcome across every attempt of one effect; None when unverifiable."""
        outcomes = {}
        for record in records:
            outcome = entry.latest_outcome(record.signature)
            outcomes[record.signature] = outcome or SubmissionOutcome.UNKNOWN

        best = max(outcomes.values(), key=lambda o: _OUTCOME_RANK[o])
        if best != SubmissionOutcome.UNKNOWN:
            return best

        # Unknown: verify on chain before compensating
        unresolved = False
        for signature, outcome in outcomes.items():
            if outcome != SubmissionOutcome.UNKNOWN:
                continue
            try:
                status = await self.channel.get_signature_status(signature)
            except Exception as e:
                Logger.warning(f"[LEDGER] Cannot verify {signature[:16]}...: {e}")
                unresolved = True
                continue
            if status.landed:
                await self.record_outcome(entry.operation_id, signature, SubmissionOutcome.LANDED)
                return SubmissionOutcome.LANDED
            if status.state == TxState.PENDING:
                unresolved = True
            else:
                await self.record_outcome(entry.operation_id, signature, SubmissionOutcome.FAILED, status.error)
        return None if unresolved else SubmissionOutcome.FAILED

    async def _compensate(self, entry: _TrackedOperation, records: List[CompensationRecord]) -> RollbackAction:
        record = records[0]
        effect = record.effect

        def action(name: str, status: str, detail: str = "", signature: Optional[str] = None) -> RollbackAction:
            return RollbackAction(
                effect_key=effect.key,
                effect=effect.kind.value,
                target=effect.target,
                wallet=effect.wallet,
                group_label=record.group_label,
                action=name,
                status=status,
                detail=detail,
                signature=signature,
            )

        # Uploaded metadata is cleaned up whether or not the transaction landed
        if effect.kind == EffectKind.METADATA_REGISTERED:
            return await self._rollback_metadata(effect.details.get("uri", ""), action)

        outcome = await self._resolve_outcome(entry, records)
        if outcome is None:
            return action("verify", "unresolved", "outcome unknown and not verifiable on chain")
        if outcome != SubmissionOutcome.LANDED:
            return action("no_action", "not_needed", "transaction did not land")

        if effect.reversibility == Reversibility.NO_ACTION_NEEDED:
            return action("no_action", "not_needed")
        if effect.reversibility == Reversibility.REQUIRES_MANUAL_ACTION:
            self._manual_flags += 1
            Logger.warning(f"[LEDGER] Manual action required: {effect.kind.value} {effect.target}")
            return action("manual", "pending_manual", _manual_detail(effect))

        account_type = effect.details.get("account_type")
        try:
            if effect.kind == EffectKind.ACCOUNT_CREATED and account_type == AccountType.TOKEN.value:
                return await self._close_token_account(entry, effect, action)
            if effect.kind == EffectKind.ACCOUNT_CREATED and account_type == AccountType.MINT.value:
                return await self._disable_mint(entry, effect, action)
        except Exception as e:
            self._compensation_failures += 1
            Logger.error(f"[LEDGER] Compensation failed for {effect.key}: {e}")
            return action("close_account" if account_type == AccountType.TOKEN.value else "disable_mint",
                          "failed", str(e))

        self._manual_flags += 1
        return action("manual", "pending_manual", _manual_detail(effect))

    # ═══════════════════════════════════════════════════════════════════
    # STRATEGIES
    # ═══════════════════════════════════════════════════════════════════

    async def _rollback_metadata(self, uri: str, action) -> RollbackAction:
        if not uri or uri.startswith("data:"):
            return action("unpin_metadata", "inline_no_action")
        if self.metadata_store is None:
            return action("unpin_metadata", "not_tracked", "no metadata store configured")
        try:
            result = await self.metadata_store.rollback_upload(uri)
        except Exception as e:
            # Best effort: logged only
            Logger.warning(f"[LEDGER] Metadata rollback failed for {uri}: {e}")
            return action("unpin_metadata", "rollback_failed", str(e))
        status = result.get("status", "rollback_failed")
        if status == "rollback_failed":
            Logger.warning(f"[LEDGER] Metadata rollback failed for {uri}: {result.get('error', '')}")
        return action("unpin_metadata", status, result.get("error", ""))

    async def _close_token_account(self, entry: _TrackedOperation, effect, action) -> RollbackAction:
        amount = await self.channel.get_token_account_amount(effect.target)
        if amount is None:
            return action("close_account", "not_needed", "account does not exist")
        if amount > 0:
            self._manual_flags += 1
            return action("manual", "pending_manual", f"account holds {amount} base units; cannot close")

        owner = effect.details.get("owner", entry.payer)
        instructions = [self.encoder.close_token_account(effect.target, entry.payer, owner)]
        signature = await self._execute(entry, instructions, owner)
        self._compensations += 1
        Logger.info(f"[LEDGER] Closed empty token account {effect.target[:8]}...")
        return action("close_account", "completed", signature=signature)

    async def _disable_mint(self, entry: _TrackedOperation, effect, action) -> RollbackAction:
        # SPL mints cannot be closed; revoking the mint authority disables them
        supply = await self.channel.get_mint_supply(effect.target)
        if supply is None:
            return action("disable_mint", "not_needed", "mint does not exist")
        if supply > 0:
            self._manual_flags += 1
            return action("manual", "pending_manual", f"mint has supply {supply}; cannot disable")

        authority = effect.details.get("owner", entry.payer)
        instructions = [self.encoder.revoke_authority(effect.target, authority, "mint")]
        signature = await self._execute(entry, instructions, authority)
        self._compensations += 1
        Logger.info(f"[LEDGER] Disabled empty mint {effect.target[:8]}...")
        return action("disable_mint", "completed", signature=signature)

    async def _execute(self, entry: _TrackedOperation, instructions: list, signer: str) -> str:
        if self.executor is None:
            raise RuntimeError("No compensation executor configured")
        co_signers = [entry.signers[signer]] if signer in entry.signers else []
        return await self.executor(entry.payer, instructions, co_signers)

    # ═══════════════════════════════════════════════════════════════════
    # MAINTENANCE
    # ═══════════════════════════════════════════════════════════════════

    def clear_history(self, older_than: float) -> int:
        """Drop settled operations not updated in the last `older_than` seconds."""
        cutoff = time.time() - older_than
        stale = [
            op_id for op_id, entry in self._operations.items()
            if entry.updated_at < cutoff and not entry.lock.locked() and (
                entry.completed
                or (entry.rollbacks > 0 and not any(a.is_open for a in entry.resolutions.values()))
            )
        ]
        for op_id in stale:
            del self._operations[op_id]
        if stale:
            Logger.debug(f"[LEDGER] Cleared {len(stale)} settled operation(s)")
        return len(stale)

    def get_stats(self) -> dict:
        return {
            "tracked": len(self._operations),
            "completed": sum(1 for e in self._operations.values() if e.completed),
            "records": self._records,
            "rollbacks": self._rollbacks,
            "compensations": self._compensations,
            "compensation_failures": self._compensation_failures,
            "manual_flags": self._manual_flags,
        }


def _manual_detail(effect) -> str:
    d = effect.details
    if effect.kind == EffectKind.TRANSFER:
        return f"{d.get('amount')} of {d.get('mint')} sent to {d.get('to')}; recover from recipient"
    if effect.kind == EffectKind.LIQUIDITY_CONTRIBUTION:
        return f"{d.get('tokens')} tokens / {d.get('sol')} lamports contributed to {effect.target}"
    if effect.kind == EffectKind.TOKENS_MINTED:
        return f"{d.get('amount')} minted into {effect.target}; burn to reverse"
    if effect.kind == EffectKind.AUTHORITY_REVOKED:
        return f"{', '.join(d.get('authorities', []))} authority revoked; irreversible"
    if effect.kind == EffectKind.METADATA_UPDATED:
        return "metadata overwritten; restore previous values"
    if effect.kind == EffectKind.ACCOUNT_CREATED:
        return f"{d.get('account_type')} account {effect.target} created; close manually"
    return effect.kind.value
