"""
Operation Schemas
=================
Typed data model shared by every orchestration component.

Operation parameters form a closed tagged union: one dataclass per
OperationKind, dispatched on `params.kind` by the validator, the
builder and the compensation ledger.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any, ClassVar, Union

from solders.instruction import Instruction
from solders.keypair import Keypair


# ═══════════════════════════════════════════════════════════════════════════════
# OPERATION KINDS & STATUS
# ═══════════════════════════════════════════════════════════════════════════════

class OperationKind(Enum):
    ASSET_CREATION = "asset-creation"
    DISTRIBUTION = "distribution"
    POOL_CREATION = "pool-creation"
    METADATA_UPDATE = "metadata-update"
    AUTHORITY_REVOKE = "authority-revoke"


class OperationStatus(Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OperationStatus.COMPLETED,
            OperationStatus.ROLLED_BACK,
            OperationStatus.CANCELLED,
        )


# Forward-only, plus the single failed -> rolled_back edge
ALLOWED_TRANSITIONS: Dict[OperationStatus, frozenset] = {
    OperationStatus.PENDING: frozenset({
        OperationStatus.VALIDATING, OperationStatus.FAILED, OperationStatus.CANCELLED,
    }),
    OperationStatus.VALIDATING: frozenset({
        OperationStatus.EXECUTING, OperationStatus.FAILED, OperationStatus.CANCELLED,
    }),
    OperationStatus.EXECUTING: frozenset({
        OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED,
    }),
    OperationStatus.FAILED: frozenset({OperationStatus.ROLLED_BACK}),
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.ROLLED_BACK: frozenset(),
    OperationStatus.CANCELLED: frozenset(),
}


# ═══════════════════════════════════════════════════════════════════════════════
# OPERATION PARAMETERS (tagged union)
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class WalletParticipant:
    """A co-signing wallet and its contribution to a pooled operation."""

    address: str
    sol_lamports: int = 0
    token_amount: int = 0  # base units
    signer: Optional[Keypair] = None  # None: signed through the signing service


@dataclass
class Recipient:
    address: str
    amount: int  # base units


@dataclass
class AssetCreationParams:
    """Create a mint, register metadata, mint the initial supply."""

    kind: ClassVar[OperationKind] = OperationKind.ASSET_CREATION

    payer: str
    name: str
    symbol: str
    decimals: int = 9
    initial_supply: int = 0  # whole tokens
    uri: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    owner: Optional[str] = None  # initial balance holder, defaults to payer
    revoke_mint_authority: bool = False
    revoke_freeze_authority: bool = False

    @property
    def has_metadata(self) -> bool:
        return any((self.name, self.symbol, self.uri))

    @property
    def raw_supply(self) -> int:
        return int(self.initial_supply) * (10 ** int(self.decimals))


@dataclass
class DistributionParams:
    """Transfer an existing token from the payer to many recipients."""

    kind: ClassVar[OperationKind] = OperationKind.DISTRIBUTION

    payer: str
    mint: str
    decimals: int
    recipients: List[Recipient] = field(default_factory=list)

    @property
    def total_amount(self) -> int:
        return sum(r.amount for r in self.recipients)


@dataclass
class PoolCreationParams:
    """Create a pool account and seed it from the payer and participants."""

    kind: ClassVar[OperationKind] = OperationKind.POOL_CREATION

    payer: str
    mint: str
    decimals: int
    token_amount: int  # base units from the payer
    sol_lamports: int  # lamports from the payer
    participants: List[WalletParticipant] = field(default_factory=list)
    pool_program_id: Optional[str] = None


@dataclass
class MetadataUpdateParams:
    """Replace the on-chain name/symbol/uri of an existing mint."""

    kind: ClassVar[OperationKind] = OperationKind.METADATA_UPDATE

    payer: str  # current update authority
    mint: str
    name: str
    symbol: str
    uri: str = ""


@dataclass
class AuthorityRevokeParams:
    kind: ClassVar[OperationKind] = OperationKind.AUTHORITY_REVOKE

    payer: str  # current authority
    mint: str
    revoke_mint: bool = True
    revoke_freeze: bool = False


OperationParams = Union[
    AssetCreationParams,
    DistributionParams,
    PoolCreationParams,
    MetadataUpdateParams,
    AuthorityRevokeParams,
]


# ═══════════════════════════════════════════════════════════════════════════════
# SIDE EFFECTS & COMPENSATION RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

class Reversibility(Enum):
    AUTO_REVERSIBLE = "auto-reversible"
    REQUIRES_MANUAL_ACTION = "requires-manual-action"
    NO_ACTION_NEEDED = "no-action-needed"


class EffectKind(Enum):
    ACCOUNT_CREATED = "account_created"
    METADATA_REGISTERED = "metadata_registered"
    METADATA_UPDATED = "metadata_updated"
    TOKENS_MINTED = "tokens_minted"
    TRANSFER = "transfer"
    LIQUIDITY_CONTRIBUTION = "liquidity_contribution"
    AUTHORITY_REVOKED = "authority_revoked"


class AccountType(Enum):
    MINT = "mint"
    TOKEN = "token"
    PROGRAM = "program"


class SubmissionOutcome(Enum):
    LANDED = "landed"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SideEffect:
    """What a group does to the ledger if it lands."""

    kind: EffectKind
    wallet: str  # wallet the effect is attributed to
    reversibility: Reversibility
    target: str  # account, uri or mint the effect touches
    details: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def key(self) -> str:
        """Identity shared by every attempt that would produce this effect."""
        return f"{self.kind.value}:{self.target}:{self.wallet}"


@dataclass(frozen=True)
class CompensationRecord:
    """
    One tracked side effect of one attempted transaction.

    Written before the network call; never mutated. Outcomes and
    resolutions are stored alongside by the ledger.
    """

    record_id: str
    operation_id: str
    group_index: int
    group_label: str
    signature: str
    effect: SideEffect
    method: str
    attempt: int
    created_at: float = field(default_factory=time.time)

    @property
    def reversibility(self) -> Reversibility:
        return self.effect.reversibility

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "group": f"{self.group_index}:{self.group_label}",
            "signature": self.signature,
            "effect": self.effect.kind.value,
            "target": self.effect.target,
            "wallet": self.effect.wallet,
            "reversibility": self.effect.reversibility.value,
            "method": self.method,
            "attempt": self.attempt,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# INSTRUCTION GROUPS & SIGNED PLANS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class InstructionGroup:
    """Instructions that must land together in exactly one transaction."""

    label: str
    instructions: List[Instruction]
    co_signers: List[Keypair] = field(default_factory=list)
    effects: List[SideEffect] = field(default_factory=list)
    artifacts: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.instructions:
            raise ValueError(f"Instruction group '{self.label}' is empty")


@dataclass
class SignedTransaction:
    group_index: int
    label: str
    transaction: Any  # solders VersionedTransaction
    effects: List[SideEffect] = field(default_factory=list)

    @property
    def signature(self) -> str:
        return str(self.transaction.signatures[0])


@dataclass
class BundlePlan:
    """Signed transactions in group order; `atomic` when packed into a bundle."""

    transactions: List[SignedTransaction]
    atomic: bool = False
    tip_lamports: int = 0

    @property
    def signatures(self) -> List[str]:
        return [t.signature for t in self.transactions]


# ═══════════════════════════════════════════════════════════════════════════════
# EXECUTION CONTEXT & OPERATION
# ═══════════════════════════════════════════════════════════════════════════════

class CancellationToken:
    """Caller-side abort, honored between attempts."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class ExecutionContext:
    """Per-operation mutable retry state; never persisted."""

    operation_id: str
    fee_micro_lamports: int
    tip_lamports: int
    attempt: int = 1
    fallback: bool = False
    cancel_token: CancellationToken = field(default_factory=CancellationToken)

    def escalate(self, multiplier: float, max_tip: int) -> None:
        """Raise fee and tip; both never decrease."""
        self.fee_micro_lamports = max(
            self.fee_micro_lamports, int(round(self.fee_micro_lamports * multiplier))
        )
        self.tip_lamports = max(
            self.tip_lamports, min(int(round(self.tip_lamports * multiplier)), max_tip)
        )


@dataclass
class Operation:
    """One unit of client intent and its lifecycle."""

    kind: OperationKind
    params: Any
    operation_id: str = field(default_factory=lambda: f"op_{uuid.uuid4().hex[:16]}")
    status: OperationStatus = OperationStatus.PENDING
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    checkpoints: List[Dict[str, Any]] = field(default_factory=list)
    change_log: List[Dict[str, Any]] = field(default_factory=list)

    def transition(self, new_status: OperationStatus, **data: Any) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal transition {self.status.value} -> {new_status.value} "
                f"for {self.operation_id}"
            )
        previous = self.status
        self.status = new_status
        self.updated_at = time.time()
        self.checkpoints.append({
            "status": new_status.value,
            "timestamp": self.updated_at,
            "data": dict(data),
        })
        self.log("status_changed", previous=previous.value, current=new_status.value)

    def log(self, event: str, **details: Any) -> None:
        self.change_log.append({
            "timestamp": time.time(),
            "event": event,
            "details": details,
        })
