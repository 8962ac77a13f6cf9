"""
Orchestration Pipeline
======================
Validate, build, bundle, submit, retry and compensate.

Components:
- PreconditionValidator: Structure and balance checks (The Inspector)
- InstructionGroupBuilder: Ordered instruction groups (The Architect)
- MultiWalletCoordinator: Participant fragments (The Quartermaster)
- TransactionBundler: Signing and bundling (The Packer)
- SubmissionGateway: Atomic / sequential submission (The Pilot)
- RetryController: Retry, fee escalation and fallback (The Navigator)
- CompensationLedger: Write-ahead records and rollback (The Medic)
- Orchestrator: Lifecycle and wiring (The Conductor)
"""

from splforge.execution.schemas import (
    AssetCreationParams,
    AuthorityRevokeParams,
    CancellationToken,
    DistributionParams,
    ExecutionContext,
    MetadataUpdateParams,
    Operation,
    OperationKind,
    OperationStatus,
    PoolCreationParams,
    Recipient,
    WalletParticipant,
)

from splforge.execution.precondition_validator import (
    PreconditionValidator,
    ValidationReport,
    Violation,
)

from splforge.execution.instruction_factory import InstructionGroupBuilder

from splforge.execution.multi_wallet_coordinator import (
    ContributionPlan,
    MultiWalletCoordinator,
)

from splforge.execution.transaction_bundler import TransactionBundler

from splforge.execution.bundle_submitter import (
    GatewayConfig,
    SubmissionGateway,
)

from splforge.execution.retry_controller import (
    ControllerOutcome,
    ControllerState,
    RetryController,
)

from splforge.execution.compensation_ledger import (
    CompensationLedger,
    RollbackAction,
    RollbackReport,
)

from splforge.execution.orchestrator import Orchestrator


__all__ = [
    # Schemas
    "AssetCreationParams",
    "AuthorityRevokeParams",
    "CancellationToken",
    "DistributionParams",
    "ExecutionContext",
    "MetadataUpdateParams",
    "Operation",
    "OperationKind",
    "OperationStatus",
    "PoolCreationParams",
    "Recipient",
    "WalletParticipant",
    # Validation
    "PreconditionValidator",
    "ValidationReport",
    "Violation",
    # Building
    "InstructionGroupBuilder",
    "ContributionPlan",
    "MultiWalletCoordinator",
    # Submission
    "TransactionBundler",
    "GatewayConfig",
    "SubmissionGateway",
    "ControllerOutcome",
    "ControllerState",
    "RetryController",
    # Compensation
    "CompensationLedger",
    "RollbackAction",
    "RollbackReport",
    # Entry point
    "Orchestrator",
]
