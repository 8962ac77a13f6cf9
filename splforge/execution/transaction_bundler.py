"""
Transaction Bundler
===================
Signs instruction groups into versioned transactions and, when the
atomic channel is usable, packs them into one bundle.

Every call re-derives transactions from the groups with a fresh
blockhash and the context's current fee, so a retry never resends a
stale signed payload.

Usage:
    bundler = TransactionBundler(channel, signer, encoder, atomic_enabled=True)
    plan = await bundler.bundle(groups, payer, ctx)
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence

from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from config.settings import Settings
from splforge.execution.schemas import (
    BundlePlan,
    ExecutionContext,
    InstructionGroup,
    SignedTransaction,
)
from splforge.shared.execution.execution_result import SigningError
from splforge.shared.system.logging import Logger


class TransactionBundler:
    def __init__(
        self,
        channel: Any,
        signer: Any,
        encoder: Any,
        atomic_enabled: bool = False,
        max_bundle_size: Optional[int] = None,
        tip_accounts: Optional[Sequence[str]] = None,
        compute_unit_limit: Optional[int] = None,
    ):
        self.channel = channel
        self.signer = signer
        self.encoder = encoder
        self.atomic_enabled = atomic_enabled
        self.max_bundle_size = max_bundle_size or Settings.MAX_BUNDLE_SIZE
        self.tip_accounts = list(tip_accounts or Settings.JITO_TIP_ACCOUNTS)
        self.compute_unit_limit = compute_unit_limit or Settings.DEFAULT_COMPUTE_UNIT_LIMIT
        self._tip_account_index = 0
        self._signed = 0

    def _get_next_tip_account(self) -> str:
        """Round-robin through Jito tip accounts."""
        account = self.tip_accounts[self._tip_account_index]
        self._tip_account_index = (self._tip_account_index + 1) % len(self.tip_accounts)
        return account

    def will_bundle(self, group_count: int, ctx: ExecutionContext, skip: Iterable[int] = ()) -> bool:
        return (
            self.atomic_enabled
            and not ctx.fallback
            and not list(skip)
            and 0 < group_count <= self.max_bundle_size
        )

    async def bundle(
        self,
        groups: List[InstructionGroup],
        payer: str,
        ctx: ExecutionContext,
        skip: Iterable[int] = (),
    ) -> BundlePlan:
        """
        Sign every group not in `skip`, in group order.

        Raises:
            SigningError: a required signer is unavailable or rejected
        """
        skip = set(skip)
        atomic = self.will_bundle(len(groups), ctx, skip)
        if self.atomic_enabled and not ctx.fallback and len(groups) > self.max_bundle_size:
            Logger.warning(
                f"[BUNDLER] {len(groups)} groups exceed bundle limit {self.max_bundle_size}; "
                f"sequential path from the start"
            )

        payer_key = Pubkey.from_string(payer)
        blockhash = await self.channel.get_latest_blockhash()
        pending = [i for i in range(len(groups)) if i not in skip]

        transactions: List[SignedTransaction] = []
        for position, index in enumerate(pending):
            group = groups[index]
            instructions = self.encoder.compute_budget(ctx.fee_micro_lamports, self.compute_unit_limit)
            instructions += list(group.instructions)
            if atomic and position == len(pending) - 1:
                instructions.append(
                    self.encoder.tip(payer_key, self._get_next_tip_account(), ctx.tip_lamports)
                )

            message = MessageV0.try_compile(payer_key, instructions, [], blockhash)
            tx = await self._sign(message, group.co_signers)
            transactions.append(SignedTransaction(
                group_index=index,
                label=group.label,
                transaction=tx,
                effects=list(group.effects),
            ))

        Logger.debug(
            f"[BUNDLER] {len(transactions)} tx signed ({'bundle' if atomic else 'sequential'}), "
            f"fee={ctx.fee_micro_lamports} tip={ctx.tip_lamports if atomic else 0}"
        )
        return BundlePlan(
            transactions=transactions,
            atomic=atomic,
            tip_lamports=ctx.tip_lamports if atomic else 0,
        )

    async def sign_message(self, message: MessageV0, co_signers: Sequence[Keypair] = ()) -> VersionedTransaction:
        """Sign an already compiled message (used for compensating transactions)."""
        return await self._sign(message, co_signers)

    async def _sign(self, message: MessageV0, co_signers: Sequence[Keypair]) -> VersionedTransaction:
        local = {kp.pubkey(): kp for kp in co_signers}
        payload = to_bytes_versioned(message)
        required = list(message.account_keys[:message.header.num_required_signatures])

        signatures = []
        for key in required:
            if key in local:
                signatures.append(local[key].sign_message(payload))
                continue
            signature = await self.signer.sign(key, payload)
            if signature is None:
                raise SigningError(f"Signer {key} returned no signature", signer=str(key))
            signatures.append(signature)

        self._signed += 1
        return VersionedTransaction.populate(message, signatures)

    def get_stats(self) -> dict:
        return {"signed": self._signed, "atomic_enabled": self.atomic_enabled}
