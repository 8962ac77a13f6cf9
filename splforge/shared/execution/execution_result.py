"""
Unified Execution Result
========================
Error taxonomy, exception hierarchy and the standard result types
returned by the Submission Gateway and the Orchestrator.

Every failure that crosses a component boundary is expressed as an
ErrorKind so the Retry/Escalation Controller can look up its policy.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException


class ErrorKind(Enum):
    """Classified failure kinds (kind, not implementation type)."""

    # Caller-side errors (never retried, nothing submitted)
    VALIDATION = "Validation"
    SIGNING = "Signing"

    # Atomic channel errors (retried with fee escalation, then fallback)
    BUNDLE_REJECTED = "BundleRejected"
    NO_ATOMIC_SLOT = "NoAtomicSlot"
    ATOMIC_CHANNEL_UNAVAILABLE = "AtomicChannelUnavailable"

    # Transient network errors (retried with backoff + jitter)
    NETWORK_CONGESTION = "NetworkCongestion"
    TRANSPORT_ERROR = "TransportError"

    # Terminal: the operation cannot succeed as specified
    SIMULATION_FAILED = "SimulationFailed"
    PROGRAM_ERROR = "ProgramError"
    ACCOUNT_NOT_FOUND = "AccountNotFound"

    # Sent, outcome not observed
    CONFIRMATION_TIMEOUT = "ConfirmationTimeout"

    UNKNOWN = "Unknown"


# Kinds after which the sequential path may still succeed
FALLBACK_KINDS = frozenset({
    ErrorKind.BUNDLE_REJECTED,
    ErrorKind.NO_ATOMIC_SLOT,
    ErrorKind.ATOMIC_CHANNEL_UNAVAILABLE,
    ErrorKind.NETWORK_CONGESTION,
    ErrorKind.TRANSPORT_ERROR,
})

# Kinds raised before anything reaches the ledger
PRE_SUBMISSION_KINDS = frozenset({ErrorKind.VALIDATION, ErrorKind.SIGNING})


class SubmissionMethod(Enum):
    ATOMIC = "atomic"
    SEQUENTIAL = "sequential"


class BundleStatus(Enum):
    PENDING = "pending"
    LANDED = "landed"
    FAILED = "failed"
    INVALID = "invalid"


class TxState(Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass
class TxStatus:
    """Signature status as reported by the standard channel."""

    state: TxState
    error: Optional[str] = None

    @property
    def landed(self) -> bool:
        return self.state == TxState.CONFIRMED


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class OrchestrationError(Exception):
    """Base error carrying a classified kind."""

    def __init__(self, kind: ErrorKind, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}
        self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value}: {self.message})"


class ValidationError(OrchestrationError):
    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        super().__init__(ErrorKind.VALIDATION, message, {"field": field, "value": value})
        self.field = field
        self.value = value


class SigningError(OrchestrationError):
    def __init__(self, message: str, signer: Optional[str] = None):
        super().__init__(ErrorKind.SIGNING, message, {"signer": signer})
        self.signer = signer


class SubmissionError(OrchestrationError):
    """Raised by channel adapters with an already classified kind."""


# ═══════════════════════════════════════════════════════════════════════════════
# CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════════════

# Ordered: first match wins
_MESSAGE_RULES = (
    (("custom program error", "instructionerror", "program failed"), ErrorKind.PROGRAM_ERROR),
    (("accountnotfound", "account not found", "could not find account"), ErrorKind.ACCOUNT_NOT_FOUND),
    (("simulation", "preflight", "insufficient"), ErrorKind.SIMULATION_FAILED),
    (("blockhash not found", "block height exceeded"), ErrorKind.TRANSPORT_ERROR),
    (("429", "rate limit", "too many requests", "congest"), ErrorKind.NETWORK_CONGESTION),
    (("leader",), ErrorKind.NO_ATOMIC_SLOT),
    (("network", "connection", "timed out", "timeout"), ErrorKind.TRANSPORT_ERROR),
)


def classify_message(message: str) -> ErrorKind:
    """Map a raw error message onto an ErrorKind."""
    text = (message or "").lower()
    if "bundle" in text and any(w in text for w in ("reject", "dropped", "invalid", "failed")):
        return ErrorKind.BUNDLE_REJECTED
    for needles, kind in _MESSAGE_RULES:
        if any(n in text for n in needles):
            return kind
    return ErrorKind.UNKNOWN


def classify_error(error: BaseException) -> ErrorKind:
    """Classify any exception raised by a collaborator."""
    if isinstance(error, OrchestrationError):
        return error.kind
    if isinstance(error, httpx.HTTPStatusError):
        if error.response.status_code in (429, 503):
            return ErrorKind.NETWORK_CONGESTION
        return ErrorKind.TRANSPORT_ERROR
    if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSPORT_ERROR
    if isinstance(error, (RPCException, SolanaRpcException)):
        kind = classify_message(str(error))
        return ErrorKind.TRANSPORT_ERROR if kind == ErrorKind.UNKNOWN else kind
    return classify_message(str(error))


def as_orchestration_error(error: BaseException) -> OrchestrationError:
    """Wrap a foreign exception, keeping its classification."""
    if isinstance(error, OrchestrationError):
        return error
    return SubmissionError(
        classify_error(error),
        str(error) or type(error).__name__,
        {"exception": type(error).__name__},
    )


# Failures raised by collaborators (as opposed to programming errors)
COLLABORATOR_ERRORS = (
    OrchestrationError,
    httpx.HTTPError,
    RPCException,
    SolanaRpcException,
    TimeoutError,
    ConnectionError,
)


USER_MESSAGES = {
    ErrorKind.VALIDATION: "Invalid input provided, please check your data",
    ErrorKind.SIGNING: "Wallet signature unavailable or rejected, please reconnect and retry",
    ErrorKind.BUNDLE_REJECTED: "Transaction bundle was rejected",
    ErrorKind.NO_ATOMIC_SLOT: "No bundle leader slot available",
    ErrorKind.ATOMIC_CHANNEL_UNAVAILABLE: "Bundle service temporarily unavailable, using regular transactions",
    ErrorKind.NETWORK_CONGESTION: "Network is congested, please try again",
    ErrorKind.TRANSPORT_ERROR: "Connection to the network failed",
    ErrorKind.SIMULATION_FAILED: "Transaction simulation failed",
    ErrorKind.PROGRAM_ERROR: "On-chain program rejected the transaction",
    ErrorKind.ACCOUNT_NOT_FOUND: "A required account does not exist",
    ErrorKind.CONFIRMATION_TIMEOUT: "Transaction sent but not confirmed in time; outcome unknown",
}


def format_user_error(error) -> str:
    """Short user-facing message for an ErrorKind or an exception."""
    if isinstance(error, ErrorKind):
        return USER_MESSAGES.get(error, "An unexpected error occurred")
    kind = classify_error(error)
    return USER_MESSAGES.get(kind) or str(error) or "An unexpected error occurred"


# ═══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class SubmissionResult:
    """
    Uniform result of one Submission Gateway call.

    On the sequential path `landed_groups` lists, in order, the group
    indices that confirmed before the first failure.
    """

    success: bool
    method: SubmissionMethod
    ids: List[str] = field(default_factory=list)
    bundle_id: Optional[str] = None
    landed_groups: List[int] = field(default_factory=list)
    attempted_groups: List[int] = field(default_factory=list)
    error: Optional[OrchestrationError] = None
    latency_ms: float = 0.0

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    @property
    def is_partial(self) -> bool:
        """Some but not all groups landed (sequential path only)."""
        return (not self.success) and len(self.landed_groups) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "method": self.method.value,
            "ids": list(self.ids),
            "bundle_id": self.bundle_id,
            "landed_groups": list(self.landed_groups),
            "attempted_groups": list(self.attempted_groups),
            "error": self.error.to_dict() if self.error else None,
            "latency_ms": self.latency_ms,
        }


@dataclass
class OperationResult:
    """
    Result of Orchestrator.execute().

    Usage:
        result = await orchestrator.execute(params)
        if result.success:
            log(result.ids)
        else:
            for item in result.manual_actions:
                alert(item)
    """

    success: bool
    operation_id: str
    method: Optional[SubmissionMethod] = None
    ids: List[str] = field(default_factory=list)
    status: str = "pending"
    attempts: int = 0
    landed_groups: List[int] = field(default_factory=list)
    error: Optional[OrchestrationError] = None
    rollback: Optional[Any] = None  # RollbackReport
    artifacts: Dict[str, str] = field(default_factory=dict)
    fee_micro_lamports: int = 0
    tip_lamports: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def manual_actions(self) -> List[Any]:
        if self.rollback is None:
            return []
        return list(self.rollback.manual_actions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "operation_id": self.operation_id,
            "method": self.method.value if self.method else None,
            "ids": list(self.ids),
            "status": self.status,
            "attempts": self.attempts,
            "landed_groups": list(self.landed_groups),
            "error": self.error.to_dict() if self.error else None,
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "artifacts": dict(self.artifacts),
            "fee_micro_lamports": self.fee_micro_lamports,
            "tip_lamports": self.tip_lamports,
        }

    def __repr__(self) -> str:
        if self.success:
            method = self.method.value if self.method else "n/a"
            return f"OperationResult(SUCCESS via {method}: {len(self.ids)} tx, op={self.operation_id})"
        kind = self.error.kind.value if self.error else "?"
        return f"OperationResult(FAILED: {kind}, status={self.status}, op={self.operation_id})"
