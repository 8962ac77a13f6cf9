"""
Multi-Wallet Coordinator
========================
Extends a single-signer operation into a multi-wallet one.

Responsibilities:
- Concurrent per-participant balance checks behind an all-must-succeed barrier
- One transfer-in fragment per participant (tokens and/or SOL)
- Distribution fragments: recipient token accounts + checked transfers

No partial fragment list is ever returned: if any participant fails
validation the whole preparation raises ValidationError.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from config.settings import Settings
from splforge.execution.precondition_validator import ValidationReport
from splforge.execution.schemas import (
    AccountType,
    EffectKind,
    InstructionGroup,
    Recipient,
    Reversibility,
    SideEffect,
    WalletParticipant,
)
from splforge.shared.system.logging import Logger


@dataclass
class ContributionPlan:
    fragments: List[InstructionGroup] = field(default_factory=list)
    totals: Dict[str, int] = field(default_factory=lambda: {"tokens": 0, "sol": 0})
    target_account_created: bool = False


class MultiWalletCoordinator:
    """
    Usage:
        coordinator = MultiWalletCoordinator(channel, encoder, validator)
        plan = await coordinator.prepare_contributions(mint, participants, pool, decimals, payer)
    """

    def __init__(self, channel: Any, encoder: Any, validator: Any):
        self.channel = channel
        self.encoder = encoder
        self.validator = validator

    async def prepare_contributions(
        self,
        token_ref: str,
        participants: Sequence[WalletParticipant],
        target_wallet: str,
        decimals: int,
        payer: str,
        create_target_account: bool = True,
    ) -> ContributionPlan:
        if not participants:
            return ContributionPlan()

        # All-must-succeed barrier
        results = await asyncio.gather(*(
            self.validator.check_participant(p, token_ref, f"participants[{i}]")
            for i, p in enumerate(participants)
        ))
        report = ValidationReport([v for result in results for v in result])
        if not report.ok:
            Logger.warning(
                f"[COORDINATOR] {len(report.violations)} participant violation(s); no fragments built"
            )
            raise report.to_error()

        target_ata = self.encoder.associated_token_address(target_wallet, token_ref)
        needs_target_account = False
        if create_target_account and any(p.token_amount > 0 for p in participants):
            needs_target_account = not await self.channel.account_exists(str(target_ata))

        plan = ContributionPlan()
        for p in participants:
            instructions = []
            effects = []
            if p.token_amount > 0:
                if needs_target_account and not plan.target_account_created:
                    instructions.append(self.encoder.create_token_account(payer, target_wallet, token_ref))
                    effects.append(SideEffect(
                        EffectKind.ACCOUNT_CREATED,
                        wallet=payer,
                        reversibility=Reversibility.NO_ACTION_NEEDED,
                        target=str(target_ata),
                        details={"account_type": AccountType.TOKEN.value, "owner": target_wallet, "mint": token_ref},
                    ))
                    plan.target_account_created = True
                source_ata = self.encoder.associated_token_address(p.address, token_ref)
                instructions.append(self.encoder.transfer_tokens(
                    source_ata, token_ref, target_ata, p.address, p.token_amount, decimals,
                ))
            if p.sol_lamports > 0:
                instructions.append(self.encoder.transfer_native(p.address, target_wallet, p.sol_lamports))

            effects.append(SideEffect(
                EffectKind.LIQUIDITY_CONTRIBUTION,
                wallet=p.address,
                reversibility=Reversibility.REQUIRES_MANUAL_ACTION,
                target=target_wallet,
                details={"mint": token_ref, "tokens": p.token_amount, "sol": p.sol_lamports},
            ))
            plan.fragments.append(InstructionGroup(
                label=f"contribution:{p.address[:8]}",
                instructions=instructions,
                co_signers=[p.signer] if p.signer is not None else [],
                effects=effects,
            ))
            plan.totals["tokens"] += p.token_amount
            plan.totals["sol"] += p.sol_lamports

        Logger.info(
            f"[COORDINATOR] {len(plan.fragments)} contribution fragment(s): "
            f"{plan.totals['tokens']} tokens, {plan.totals['sol']} lamports -> {target_wallet[:8]}..."
        )
        return plan

    async def prepare_distribution(
        self,
        token_ref: str,
        recipients: Sequence[Recipient],
        source: str,
        decimals: int,
        batch_size: int = 0,
    ) -> List[InstructionGroup]:
        """Transfer fragments from `source`, batched into groups."""
        batch_size = batch_size or Settings.DISTRIBUTION_BATCH_SIZE
        source_ata = self.encoder.associated_token_address(source, token_ref)
        dest_atas = [self.encoder.associated_token_address(r.address, token_ref) for r in recipients]

        unique = list(dict.fromkeys(str(a) for a in dest_atas))
        exists = await asyncio.gather(*(self.channel.account_exists(a) for a in unique))
        missing = {a for a, present in zip(unique, exists) if not present}

        groups: List[InstructionGroup] = []
        for start in range(0, len(recipients), batch_size):
            instructions = []
            effects = []
            for index in range(start, min(start + batch_size, len(recipients))):
                recipient, dest = recipients[index], dest_atas[index]
                if str(dest) in missing:
                    instructions.append(self.encoder.create_token_account(source, recipient.address, token_ref))
                    effects.append(SideEffect(
                        EffectKind.ACCOUNT_CREATED,
                        wallet=source,
                        reversibility=Reversibility.NO_ACTION_NEEDED,
                        target=str(dest),
                        details={"account_type": AccountType.TOKEN.value, "owner": recipient.address, "mint": token_ref},
                    ))
                    missing.discard(str(dest))
                instructions.append(self.encoder.transfer_tokens(
                    source_ata, token_ref, dest, source, recipient.amount, decimals,
                ))
                effects.append(SideEffect(
                    EffectKind.TRANSFER,
                    wallet=source,
                    reversibility=Reversibility.REQUIRES_MANUAL_ACTION,
                    target=f"{recipient.address}#{index}",
                    details={"mint": token_ref, "amount": recipient.amount, "to": recipient.address},
                ))
            groups.append(InstructionGroup(
                label=f"distribution:{start // batch_size}",
                instructions=instructions,
                effects=effects,
            ))

        Logger.info(f"[COORDINATOR] {len(recipients)} transfer(s) in {len(groups)} group(s)")
        return groups
