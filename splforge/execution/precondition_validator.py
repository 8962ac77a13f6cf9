"""
Precondition Validator
======================
Checks operation parameters and signer balances before any
instruction is built.

Business-rule violations (bad field, insufficient balance) are
returned as a list, each naming the offending field. Only API misuse
(params is None) raises.

Usage:
    validator = PreconditionValidator(channel)
    report = await validator.validate(params)
    if not report.ok:
        raise report.to_error()
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from solders.pubkey import Pubkey

from config.settings import Settings
from splforge.execution.schemas import (
    AssetCreationParams,
    AuthorityRevokeParams,
    DistributionParams,
    MetadataUpdateParams,
    OperationKind,
    PoolCreationParams,
    WalletParticipant,
)
from splforge.shared.execution.execution_result import ValidationError
from splforge.shared.system.logging import Logger


U64_MAX = 2 ** 64 - 1
MAX_URI_LENGTH = 200
SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]+$")
URI_PATTERN = re.compile(r"^(https?://|ipfs://|ar://|data:)", re.IGNORECASE)

_PARAM_TYPES = {
    OperationKind.ASSET_CREATION: AssetCreationParams,
    OperationKind.DISTRIBUTION: DistributionParams,
    OperationKind.POOL_CREATION: PoolCreationParams,
    OperationKind.METADATA_UPDATE: MetadataUpdateParams,
    OperationKind.AUTHORITY_REVOKE: AuthorityRevokeParams,
}


@dataclass
class Violation:
    field: str
    message: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "message": self.message}


@dataclass
class ValidationReport:
    violations: List[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    @property
    def fields(self) -> List[str]:
        return [v.field for v in self.violations]

    def to_error(self) -> ValidationError:
        first = self.violations[0]
        error = ValidationError(
            f"{first.field}: {first.message}"
            + (f" (+{len(self.violations) - 1} more)" if len(self.violations) > 1 else ""),
            field=first.field,
            value=first.value,
        )
        error.details["violations"] = [v.to_dict() for v in self.violations]
        return error

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "violations": [v.to_dict() for v in self.violations]}


# A balance the validator must confirm: (field, address, lamports, mint, token_amount)
_Requirement = Tuple[str, str, int, Optional[str], int]


def is_address(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        Pubkey.from_string(value)
    except ValueError:
        return False
    return True


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class PreconditionValidator:
    """Structural and balance checks for every OperationKind."""

    def __init__(self, channel: Any):
        self.channel = channel

    async def validate(self, params: Any) -> ValidationReport:
        if params is None:
            raise TypeError("validate() requires operation params, got None")

        kind = getattr(params, "kind", None)
        if not isinstance(kind, OperationKind) or not isinstance(params, _PARAM_TYPES[kind]):
            return ValidationReport([Violation("kind", "Unknown operation kind", kind)])

        violations = self._check_structure(params)
        if not violations:
            violations = await self._check_balances(params)

        if violations:
            Logger.warning(
                f"[VALIDATOR] {kind.value}: {len(violations)} violation(s) "
                f"({', '.join(v.field for v in violations)})"
            )
        else:
            Logger.debug(f"[VALIDATOR] {kind.value} passed")
        return ValidationReport(violations)

    # ═══════════════════════════════════════════════════════════════════
    # STRUCTURE
    # ═══════════════════════════════════════════════════════════════════

    def _check_structure(self, params: Any) -> List[Violation]:
        v: List[Violation] = []
        self._address(v, "payer", params.payer)

        if isinstance(params, AssetCreationParams):
            self._name(v, "name", params.name)
            self._symbol(v, "symbol", params.symbol)
            self._decimals(v, "decimals", params.decimals)
            supply = params.initial_supply
            if not _is_int(supply) or supply < 0:
                v.append(Violation("initial_supply", "Must be a non-negative integer", supply))
            elif supply > Settings.MAX_SUPPLY:
                v.append(Violation("initial_supply", f"Exceeds maximum of {Settings.MAX_SUPPLY}", supply))
            elif _is_int(params.decimals) and params.raw_supply > U64_MAX:
                v.append(Violation("initial_supply", "Exceeds u64 at the requested decimals", supply))
            if params.description is not None and len(params.description) > Settings.MAX_DESCRIPTION_LENGTH:
                v.append(Violation(
                    "description",
                    f"Must be at most {Settings.MAX_DESCRIPTION_LENGTH} characters",
                ))
            self._uri(v, "uri", params.uri)
            self._uri(v, "image", params.image)
            if params.owner is not None:
                self._address(v, "owner", params.owner)

        elif isinstance(params, DistributionParams):
            self._address(v, "mint", params.mint)
            self._decimals(v, "decimals", params.decimals)
            if not params.recipients:
                v.append(Violation("recipients", "At least one recipient is required"))
            for i, recipient in enumerate(params.recipients):
                self._address(v, f"recipients[{i}].address", recipient.address)
                self._amount(v, f"recipients[{i}].amount", recipient.amount)

        elif isinstance(params, PoolCreationParams):
            self._address(v, "mint", params.mint)
            self._decimals(v, "decimals", params.decimals)
            self._amount(v, "token_amount", params.token_amount)
            self._amount(v, "sol_lamports", params.sol_lamports)
            if params.pool_program_id is not None:
                self._address(v, "pool_program_id", params.pool_program_id)
            for i, participant in enumerate(params.participants):
                v.extend(self.check_participant_structure(participant, f"participants[{i}]"))

        elif isinstance(params, MetadataUpdateParams):
            self._address(v, "mint", params.mint)
            self._name(v, "name", params.name)
            self._symbol(v, "symbol", params.symbol)
            self._uri(v, "uri", params.uri)

        elif isinstance(params, AuthorityRevokeParams):
            self._address(v, "mint", params.mint)
            if not (params.revoke_mint or params.revoke_freeze):
                v.append(Violation("revoke_mint", "Nothing to revoke"))

        return v

    def check_participant_structure(self, participant: WalletParticipant, prefix: str) -> List[Violation]:
        v: List[Violation] = []
        self._address(v, f"{prefix}.address", participant.address)
        for name in ("sol_lamports", "token_amount"):
            value = getattr(participant, name)
            if not _is_int(value) or value < 0:
                v.append(Violation(f"{prefix}.{name}", "Must be a non-negative integer", value))
        if not v and participant.sol_lamports == 0 and participant.token_amount == 0:
            v.append(Violation(f"{prefix}", "Participant contributes nothing"))
        return v

    @staticmethod
    def _address(v: List[Violation], name: str, value: Any) -> None:
        if not is_address(value):
            v.append(Violation(name, "Not a valid base58 public key", value))

    @staticmethod
    def _name(v: List[Violation], name: str, value: Any) -> None:
        if not isinstance(value, str) or not value.strip():
            v.append(Violation(name, "Required", value))
        elif len(value) > Settings.MAX_NAME_LENGTH:
            v.append(Violation(name, f"Must be at most {Settings.MAX_NAME_LENGTH} characters", value))

    @staticmethod
    def _symbol(v: List[Violation], name: str, value: Any) -> None:
        if not isinstance(value, str) or not value:
            v.append(Violation(name, "Required", value))
        elif len(value) > Settings.MAX_SYMBOL_LENGTH:
            v.append(Violation(name, f"Must be at most {Settings.MAX_SYMBOL_LENGTH} characters", value))
        elif not SYMBOL_PATTERN.match(value):
            v.append(Violation(name, "Only uppercase letters and digits allowed", value))

    @staticmethod
    def _decimals(v: List[Violation], name: str, value: Any) -> None:
        if not _is_int(value) or not 0 <= value <= Settings.MAX_DECIMALS:
            v.append(Violation(name, f"Must be an integer between 0 and {Settings.MAX_DECIMALS}", value))

    @staticmethod
    def _amount(v: List[Violation], name: str, value: Any) -> None:
        if not _is_int(value) or value <= 0:
            v.append(Violation(name, "Must be a positive integer", value))
        elif value > U64_MAX:
            v.append(Violation(name, "Exceeds u64", value))

    @staticmethod
    def _uri(v: List[Violation], name: str, value: Any) -> None:
        if value in (None, ""):
            return
        if not isinstance(value, str) or not URI_PATTERN.match(value):
            v.append(Violation(name, "Must be an http(s), ipfs, ar or data URL", value))
        elif name == "uri" and len(value) > MAX_URI_LENGTH:
            v.append(Violation(name, f"Must be at most {MAX_URI_LENGTH} characters", value))

    # ═══════════════════════════════════════════════════════════════════
    # BALANCES
    # ═══════════════════════════════════════════════════════════════════

    async def _rent(self, space: int) -> int:
        return await self.channel.get_minimum_balance_for_rent_exemption(space)

    async def _requirements(self, params: Any) -> List[_Requirement]:
        floor = await self._rent(0)
        buffer = Settings.TX_FEE_BUFFER_LAMPORTS
        payer = params.payer

        if isinstance(params, AssetCreationParams):
            lamports = await self._rent(Settings.MINT_ACCOUNT_SPACE)
            if params.initial_supply:
                lamports += await self._rent(Settings.TOKEN_ACCOUNT_SPACE)
            if params.has_metadata:
                lamports += Settings.METADATA_FEE_LAMPORTS
            return [("payer", payer, lamports + buffer + floor, None, 0)]

        if isinstance(params, DistributionParams):
            accounts = await self._rent(Settings.TOKEN_ACCOUNT_SPACE) * len(params.recipients)
            return [("payer", payer, accounts + buffer + floor, params.mint, params.total_amount)]

        if isinstance(params, PoolCreationParams):
            lamports = (
                params.sol_lamports
                + await self._rent(Settings.POOL_ACCOUNT_SPACE)
                + await self._rent(Settings.TOKEN_ACCOUNT_SPACE)
            )
            reqs = [("payer", payer, lamports + buffer + floor, params.mint, params.token_amount)]
            for i, p in enumerate(params.participants):
                reqs.append((
                    f"participants[{i}]", p.address, p.sol_lamports + floor, params.mint, p.token_amount,
                ))
            return reqs

        return [("payer", payer, buffer + floor, None, 0)]

    async def _check_requirement(self, req: _Requirement) -> List[Violation]:
        name, address, lamports, mint, token_amount = req
        v: List[Violation] = []
        balance = await self.channel.get_balance(address)
        if balance < lamports:
            v.append(Violation(
                f"{name}.balance",
                f"Insufficient SOL: has {balance} lamports, needs {lamports}",
                balance,
            ))
        if mint and token_amount > 0:
            tokens = await self.channel.get_token_balance(address, mint)
            if tokens < token_amount:
                v.append(Violation(
                    f"{name}.token_balance",
                    f"Insufficient tokens: has {tokens}, needs {token_amount}",
                    tokens,
                ))
        return v

    async def _check_balances(self, params: Any) -> List[Violation]:
        reqs = await self._requirements(params)
        results = await asyncio.gather(*(self._check_requirement(r) for r in reqs))
        return [violation for result in results for violation in result]

    async def check_participant(
        self, participant: WalletParticipant, mint: str, prefix: str = "participant"
    ) -> List[Violation]:
        """Structure plus balance for one participant (used by the coordinator)."""
        violations = self.check_participant_structure(participant, prefix)
        if violations:
            return violations
        floor = await self._rent(0)
        return await self._check_requirement((
            prefix, participant.address, participant.sol_lamports + floor, mint, participant.token_amount,
        ))
