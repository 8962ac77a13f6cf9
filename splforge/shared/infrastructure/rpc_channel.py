"""
Solana RPC Channel
==================
Standard (non-atomic) submission channel plus the read-only ledger
lookups the validator, builder and compensation ledger rely on.

Responsibilities:
- Fetch fresh blockhashes
- Send signed transactions
- Report signature status (confirmed / pending / failed / not found)
- Balance, account existence and rent-floor lookups

Usage:
    channel = SolanaRpcChannel(Settings.RPC_URL)
    sig = await channel.send_transaction(tx)
    status = await channel.get_signature_status(sig)
"""

from typing import Dict, Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.instructions import get_associated_token_address

from config.settings import Settings
from splforge.shared.execution.execution_result import TxState, TxStatus
from splforge.shared.system.logging import Logger


_LANDED_STATUSES = (
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
)


class SolanaRpcChannel:
    """Thin async adapter over solana-py's AsyncClient."""

    def __init__(self, rpc_url: Optional[str] = None, client: Optional[AsyncClient] = None):
        self.rpc_url = rpc_url or Settings.RPC_URL
        self.client = client or AsyncClient(self.rpc_url, commitment=Confirmed)
        self._rent_cache: Dict[int, int] = {}
        self._sent = 0

    async def close(self) -> None:
        await self.client.close()

    # ═══════════════════════════════════════════════════════════════════
    # SUBMISSION
    # ═══════════════════════════════════════════════════════════════════

    async def get_latest_blockhash(self) -> Hash:
        resp = await self.client.get_latest_blockhash(commitment=Confirmed)
        return resp.value.blockhash

    async def send_transaction(self, tx) -> str:
        resp = await self.client.send_raw_transaction(
            bytes(tx),
            opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
        )
        self._sent += 1
        signature = str(resp.value)
        Logger.debug(f"[RPC] Sent {signature[:16]}...")
        return signature

    async def get_signature_status(self, signature: str) -> TxStatus:
        resp = await self.client.get_signature_statuses(
            [Signature.from_string(signature)],
            search_transaction_history=True,
        )
        status = resp.value[0] if resp.value else None
        if status is None:
            return TxStatus(TxState.NOT_FOUND)
        if status.err is not None:
            return TxStatus(TxState.FAILED, error=str(status.err))
        if status.confirmation_status in _LANDED_STATUSES:
            return TxStatus(TxState.CONFIRMED)
        return TxStatus(TxState.PENDING)

    # ═══════════════════════════════════════════════════════════════════
    # LOOKUPS
    # ═══════════════════════════════════════════════════════════════════

    async def get_balance(self, address: str) -> int:
        resp = await self.client.get_balance(Pubkey.from_string(address))
        return resp.value

    async def account_exists(self, address: str) -> bool:
        resp = await self.client.get_account_info(Pubkey.from_string(address))
        return resp.value is not None

    async def get_token_account_amount(self, account: str) -> Optional[int]:
        """Raw token amount held by a token account, None if it does not exist."""
        if not await self.account_exists(account):
            return None
        resp = await self.client.get_token_account_balance(Pubkey.from_string(account))
        return int(resp.value.amount)

    async def get_token_balance(self, owner: str, mint: str) -> int:
        ata = get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(mint))
        amount = await self.get_token_account_amount(str(ata))
        return amount or 0

    async def get_mint_supply(self, mint: str) -> Optional[int]:
        if not await self.account_exists(mint):
            return None
        resp = await self.client.get_token_supply(Pubkey.from_string(mint))
        return int(resp.value.amount)

    async def get_minimum_balance_for_rent_exemption(self, space: int) -> int:
        if space not in self._rent_cache:
            resp = await self.client.get_minimum_balance_for_rent_exemption(space)
            self._rent_cache[space] = resp.value
        return self._rent_cache[space]

    def get_stats(self) -> dict:
        return {"rpc_url": self.rpc_url, "sent": self._sent}
