"""
SPL Instruction Encoder
=======================
Builds the raw Solana instructions used by the instruction group
builder and by compensating transactions.

Pure: no RPC, no signing. Everything returned is a solders Instruction
the orchestration core treats as opaque.
"""

from __future__ import annotations

import struct
from typing import List, Optional

from solders.instruction import Instruction, AccountMeta
from solders.pubkey import Pubkey
from solders.system_program import (
    ID as SYSTEM_PROGRAM_ID,
    create_account,
    CreateAccountParams,
    transfer,
    TransferParams,
)
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    AuthorityType,
    CloseAccountParams,
    InitializeMintParams,
    MintToParams,
    SetAuthorityParams,
    TransferCheckedParams,
    close_account,
    create_associated_token_account,
    get_associated_token_address,
    initialize_mint,
    mint_to,
    set_authority,
    transfer_checked,
)

from config.settings import Settings


METADATA_PROGRAM_ID = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")

# Token Metadata instruction discriminators
_CREATE_METADATA_V3 = 33
_UPDATE_METADATA_V2 = 15


def _pk(value) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(str(value))


def _borsh_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def _data_v2(name: str, symbol: str, uri: str, seller_fee_bps: int = 0) -> bytes:
    return (
        _borsh_string(name)
        + _borsh_string(symbol)
        + _borsh_string(uri)
        + struct.pack("<H", seller_fee_bps)
        + b"\x00"  # creators: None
        + b"\x00"  # collection: None
        + b"\x00"  # uses: None
    )


class SplInstructionEncoder:
    """
    Default ledger instruction encoder (SPL Token + Token Metadata).

    Usage:
        encoder = SplInstructionEncoder()
        ixs = encoder.create_mint(payer, mint, lamports, decimals=9)
    """

    def __init__(self, token_program_id: Pubkey = TOKEN_PROGRAM_ID):
        self.token_program_id = token_program_id

    # ═══════════════════════════════════════════════════════════════════
    # ACCOUNTS
    # ═══════════════════════════════════════════════════════════════════

    def create_mint(
        self,
        payer,
        mint,
        lamports: int,
        decimals: int,
        mint_authority=None,
        freeze_authority=None,
    ) -> List[Instruction]:
        """Allocate the mint account and initialize it."""
        payer, mint = _pk(payer), _pk(mint)
        authority = _pk(mint_authority) if mint_authority else payer
        freeze = _pk(freeze_authority) if freeze_authority else authority
        return [
            create_account(CreateAccountParams(
                from_pubkey=payer,
                to_pubkey=mint,
                lamports=lamports,
                space=Settings.MINT_ACCOUNT_SPACE,
                owner=self.token_program_id,
            )),
            initialize_mint(InitializeMintParams(
                decimals=decimals,
                program_id=self.token_program_id,
                mint=mint,
                mint_authority=authority,
                freeze_authority=freeze,
            )),
        ]

    def create_program_account(self, payer, account, lamports: int, space: int, owner) -> Instruction:
        return create_account(CreateAccountParams(
            from_pubkey=_pk(payer),
            to_pubkey=_pk(account),
            lamports=lamports,
            space=space,
            owner=_pk(owner),
        ))

    def associated_token_address(self, owner, mint) -> Pubkey:
        return get_associated_token_address(_pk(owner), _pk(mint))

    def create_token_account(self, payer, owner, mint) -> Instruction:
        return create_associated_token_account(_pk(payer), _pk(owner), _pk(mint))

    def close_token_account(self, account, destination, owner) -> Instruction:
        return close_account(CloseAccountParams(
            program_id=self.token_program_id,
            account=_pk(account),
            dest=_pk(destination),
            owner=_pk(owner),
            signers=[],
        ))

    # ═══════════════════════════════════════════════════════════════════
    # TOKEN MOVEMENT
    # ═══════════════════════════════════════════════════════════════════

    def mint_to(self, mint, destination, authority, amount: int) -> Instruction:
        return mint_to(MintToParams(
            program_id=self.token_program_id,
            mint=_pk(mint),
            dest=_pk(destination),
            mint_authority=_pk(authority),
            amount=amount,
            signers=[],
        ))

    def transfer_tokens(self, source, mint, destination, owner, amount: int, decimals: int) -> Instruction:
        return transfer_checked(TransferCheckedParams(
            program_id=self.token_program_id,
            source=_pk(source),
            mint=_pk(mint),
            dest=_pk(destination),
            owner=_pk(owner),
            amount=amount,
            decimals=decimals,
            signers=[],
        ))

    def transfer_native(self, source, destination, lamports: int) -> Instruction:
        return transfer(TransferParams(
            from_pubkey=_pk(source),
            to_pubkey=_pk(destination),
            lamports=lamports,
        ))

    def revoke_authority(self, mint, current_authority, authority: str = "mint") -> Instruction:
        """Set the mint or freeze authority to None (irreversible)."""
        authority_type = {
            "mint": AuthorityType.MINT_TOKENS,
            "freeze": AuthorityType.FREEZE_ACCOUNT,
        }[authority]
        return set_authority(SetAuthorityParams(
            program_id=self.token_program_id,
            account=_pk(mint),
            authority=authority_type,
            current_authority=_pk(current_authority),
            signers=[],
            new_authority=None,
        ))

    # ═══════════════════════════════════════════════════════════════════
    # TOKEN METADATA
    # ═══════════════════════════════════════════════════════════════════

    @staticmethod
    def metadata_address(mint) -> Pubkey:
        address, _ = Pubkey.find_program_address(
            [b"metadata", bytes(METADATA_PROGRAM_ID), bytes(_pk(mint))],
            METADATA_PROGRAM_ID,
        )
        return address

    def create_metadata(
        self,
        mint,
        payer,
        name: str,
        symbol: str,
        uri: str = "",
        update_authority=None,
        is_mutable: bool = True,
    ) -> Instruction:
        mint, payer = _pk(mint), _pk(payer)
        authority = _pk(update_authority) if update_authority else payer
        data = (
            bytes([_CREATE_METADATA_V3])
            + _data_v2(name, symbol, uri)
            + struct.pack("<?", is_mutable)
            + b"\x00"  # collection_details: None
        )
        accounts = [
            AccountMeta(self.metadata_address(mint), is_signer=False, is_writable=True),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(payer, is_signer=True, is_writable=False),  # mint authority
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(authority, is_signer=authority == payer, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
        return Instruction(METADATA_PROGRAM_ID, data, accounts)

    def update_metadata(self, mint, update_authority, name: str, symbol: str, uri: str = "") -> Instruction:
        data = (
            bytes([_UPDATE_METADATA_V2])
            + b"\x01" + _data_v2(name, symbol, uri)
            + b"\x00"  # new update authority: None
            + b"\x00"  # primary_sale_happened: None
            + b"\x00"  # is_mutable: None
        )
        accounts = [
            AccountMeta(self.metadata_address(mint), is_signer=False, is_writable=True),
            AccountMeta(_pk(update_authority), is_signer=True, is_writable=False),
        ]
        return Instruction(METADATA_PROGRAM_ID, data, accounts)

    # ═══════════════════════════════════════════════════════════════════
    # FEES
    # ═══════════════════════════════════════════════════════════════════

    def compute_budget(self, fee_micro_lamports: int, unit_limit: Optional[int] = None) -> List[Instruction]:
        return [
            set_compute_unit_limit(unit_limit or Settings.DEFAULT_COMPUTE_UNIT_LIMIT),
            set_compute_unit_price(fee_micro_lamports),
        ]

    def tip(self, payer, tip_account, lamports: int) -> Instruction:
        return self.transfer_native(payer, tip_account, lamports)
