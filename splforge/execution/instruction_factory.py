"""
Instruction Group Builder
=========================
Turns a declarative operation into ordered instruction groups.

The "Architect" of the orchestration pipeline.

Group order is fixed:
    account creation -> metadata -> initial mint -> participant fragments

Each group lands in exactly one transaction. A group that would not fit
in a single transaction is a hard ValidationError; it is never split.
The only ledger access is read-only (rent floors, account existence).

Usage:
    builder = InstructionGroupBuilder(encoder, channel, coordinator)
    groups = await builder.build(params)
"""

from __future__ import annotations

from typing import Any, List

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey

from config.settings import Settings
from splforge.execution.schemas import (
    AccountType,
    AssetCreationParams,
    AuthorityRevokeParams,
    DistributionParams,
    EffectKind,
    InstructionGroup,
    MetadataUpdateParams,
    PoolCreationParams,
    Reversibility,
    SideEffect,
)
from splforge.shared.execution.execution_result import ValidationError
from splforge.shared.system.logging import Logger


SIGNATURE_BYTES = 64


class InstructionGroupBuilder:
    """Deterministic group layout per OperationKind."""

    def __init__(self, encoder: Any, channel: Any, coordinator: Any):
        self.encoder = encoder
        self.channel = channel
        self.coordinator = coordinator

    async def build(self, params: Any) -> List[InstructionGroup]:
        if isinstance(params, AssetCreationParams):
            groups = await self._build_asset_creation(params)
        elif isinstance(params, DistributionParams):
            groups = await self.coordinator.prepare_distribution(
                params.mint, params.recipients, params.payer, params.decimals,
            )
        elif isinstance(params, PoolCreationParams):
            groups = await self._build_pool_creation(params)
        elif isinstance(params, MetadataUpdateParams):
            groups = [self._build_metadata_update(params)]
        elif isinstance(params, AuthorityRevokeParams):
            groups = [self._build_authority_revoke(params)]
        else:
            raise ValidationError("Unknown operation kind", field="kind", value=type(params).__name__)

        self.check_sizes(groups, params.payer)
        Logger.info(
            f"[BUILDER] {params.kind.value}: {len(groups)} group(s) "
            f"[{' -> '.join(g.label for g in groups)}]"
        )
        return groups

    # ═══════════════════════════════════════════════════════════════════
    # LAYOUTS
    # ═══════════════════════════════════════════════════════════════════

    async def _build_asset_creation(self, params: AssetCreationParams) -> List[InstructionGroup]:
        payer = params.payer
        owner = params.owner or payer
        mint_keypair = Keypair()
        mint = str(mint_keypair.pubkey())
        rent = await self.channel.get_minimum_balance_for_rent_exemption(Settings.MINT_ACCOUNT_SPACE)

        groups = [InstructionGroup(
            label="create_mint",
            instructions=self.encoder.create_mint(payer, mint, rent, params.decimals),
            co_signers=[mint_keypair],
            effects=[SideEffect(
                EffectKind.ACCOUNT_CREATED,
                wallet=payer,
                reversibility=Reversibility.AUTO_REVERSIBLE,
                target=mint,
                details={"account_type": AccountType.MINT.value, "owner": payer},
            )],
            artifacts={"mint": mint},
        )]

        if params.has_metadata:
            uri = params.uri or ""
            metadata_account = str(self.encoder.metadata_address(mint))
            groups.append(InstructionGroup(
                label="metadata",
                instructions=[self.encoder.create_metadata(mint, payer, params.name, params.symbol, uri)],
                effects=[SideEffect(
                    EffectKind.METADATA_REGISTERED,
                    wallet=payer,
                    reversibility=Reversibility.AUTO_REVERSIBLE,
                    target=metadata_account,
                    details={"uri": uri, "mint": mint},
                )],
                artifacts={"metadata": metadata_account},
            ))

        raw_supply = params.raw_supply
        if raw_supply > 0:
            ata = str(self.encoder.associated_token_address(owner, mint))
            groups.append(InstructionGroup(
                label="initial_mint",
                instructions=[
                    self.encoder.create_token_account(payer, owner, mint),
                    self.encoder.mint_to(mint, ata, payer, raw_supply),
                ],
                effects=[
                    SideEffect(
                        EffectKind.ACCOUNT_CREATED,
                        wallet=owner,
                        reversibility=(
                            Reversibility.AUTO_REVERSIBLE if owner == payer
                            else Reversibility.REQUIRES_MANUAL_ACTION
                        ),
                        target=ata,
                        details={"account_type": AccountType.TOKEN.value, "owner": owner, "mint": mint},
                    ),
                    SideEffect(
                        EffectKind.TOKENS_MINTED,
                        wallet=owner,
                        reversibility=Reversibility.REQUIRES_MANUAL_ACTION,
                        target=ata,
                        details={"mint": mint, "amount": raw_supply},
                    ),
                ],
                artifacts={"token_account": ata},
            ))

        authorities = [
            name for name, wanted in (
                ("mint", params.revoke_mint_authority),
                ("freeze", params.revoke_freeze_authority),
            ) if wanted
        ]
        if authorities:
            groups.append(self._revoke_group(mint, payer, authorities))

        return groups

    async def _build_pool_creation(self, params: PoolCreationParams) -> List[InstructionGroup]:
        payer = params.payer
        program_id = params.pool_program_id or Settings.POOL_PROGRAM_ID
        pool_keypair = Keypair()
        pool = str(pool_keypair.pubkey())
        vault = str(self.encoder.associated_token_address(pool, params.mint))
        rent = await self.channel.get_minimum_balance_for_rent_exemption(Settings.POOL_ACCOUNT_SPACE)

        groups = [
            InstructionGroup(
                label="pool_accounts",
                instructions=[
                    self.encoder.create_program_account(payer, pool, rent, Settings.POOL_ACCOUNT_SPACE, program_id),
                    self.encoder.create_token_account(payer, pool, params.mint),
                ],
                co_signers=[pool_keypair],
                effects=[
                    SideEffect(
                        EffectKind.ACCOUNT_CREATED,
                        wallet=payer,
                        reversibility=Reversibility.REQUIRES_MANUAL_ACTION,
                        target=pool,
                        details={"account_type": AccountType.PROGRAM.value, "owner": program_id},
                    ),
                    SideEffect(
                        EffectKind.ACCOUNT_CREATED,
                        wallet=payer,
                        reversibility=Reversibility.AUTO_REVERSIBLE,
                        target=vault,
                        details={"account_type": AccountType.TOKEN.value, "owner": pool, "mint": params.mint},
                    ),
                ],
                artifacts={"pool": pool, "vault": vault},
            ),
            InstructionGroup(
                label="payer_liquidity",
                instructions=[
                    self.encoder.transfer_tokens(
                        self.encoder.associated_token_address(payer, params.mint),
                        params.mint, vault, payer, params.token_amount, params.decimals,
                    ),
                    self.encoder.transfer_native(payer, pool, params.sol_lamports),
                ],
                effects=[SideEffect(
                    EffectKind.LIQUIDITY_CONTRIBUTION,
                    wallet=payer,
                    reversibility=Reversibility.REQUIRES_MANUAL_ACTION,
                    target=pool,
                    details={"mint": params.mint, "tokens": params.token_amount, "sol": params.sol_lamports},
                )],
            ),
        ]

        plan = await self.coordinator.prepare_contributions(
            params.mint, params.participants, pool, params.decimals, payer,
            create_target_account=False,
        )
        groups.extend(plan.fragments)
        return groups

    def _build_metadata_update(self, params: MetadataUpdateParams) -> InstructionGroup:
        metadata_account = str(self.encoder.metadata_address(params.mint))
        effects = [SideEffect(
            EffectKind.METADATA_UPDATED,
            wallet=params.payer,
            reversibility=Reversibility.REQUIRES_MANUAL_ACTION,
            target=metadata_account,
            details={"mint": params.mint, "name": params.name, "symbol": params.symbol, "uri": params.uri},
        )]
        if params.uri:
            effects.append(SideEffect(
                EffectKind.METADATA_REGISTERED,
                wallet=params.payer,
                reversibility=Reversibility.AUTO_REVERSIBLE,
                target=metadata_account,
                details={"uri": params.uri, "mint": params.mint},
            ))
        return InstructionGroup(
            label="update_metadata",
            instructions=[self.encoder.update_metadata(
                params.mint, params.payer, params.name, params.symbol, params.uri,
            )],
            effects=effects,
            artifacts={"metadata": metadata_account},
        )

    def _build_authority_revoke(self, params: AuthorityRevokeParams) -> InstructionGroup:
        authorities = [
            name for name, wanted in (("mint", params.revoke_mint), ("freeze", params.revoke_freeze))
            if wanted
        ]
        return self._revoke_group(params.mint, params.payer, authorities)

    def _revoke_group(self, mint: str, authority: str, authorities: List[str]) -> InstructionGroup:
        return InstructionGroup(
            label="revoke_authorities",
            instructions=[self.encoder.revoke_authority(mint, authority, a) for a in authorities],
            effects=[SideEffect(
                EffectKind.AUTHORITY_REVOKED,
                wallet=authority,
                reversibility=Reversibility.REQUIRES_MANUAL_ACTION,
                target=mint,
                details={"authorities": list(authorities)},
            )],
        )

    # ═══════════════════════════════════════════════════════════════════
    # SIZE CHECK
    # ═══════════════════════════════════════════════════════════════════

    def estimate_size(self, group: InstructionGroup, payer: str, with_tip: bool = False) -> int:
        """Serialized size of the group once compute budget (and tip) are added."""
        payer_key = Pubkey.from_string(payer)
        instructions = self.encoder.compute_budget(Settings.DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS)
        instructions += list(group.instructions)
        if with_tip:
            instructions.append(self.encoder.tip(payer_key, Settings.JITO_TIP_ACCOUNTS[0], 1))
        message = MessageV0.try_compile(payer_key, instructions, [], Hash.default())
        signers = message.header.num_required_signatures
        return 1 + SIGNATURE_BYTES * signers + len(to_bytes_versioned(message))

    def check_sizes(self, groups: List[InstructionGroup], payer: str) -> None:
        for i, group in enumerate(groups):
            size = self.estimate_size(group, payer, with_tip=i == len(groups) - 1)
            if size > Settings.MAX_TRANSACTION_BYTES:
                raise ValidationError(
                    f"Group '{group.label}' is {size} bytes, limit is {Settings.MAX_TRANSACTION_BYTES}",
                    field=f"groups[{i}].{group.label}",
                    value=size,
                )
