"""
Mock Chain
==========
In-memory ledger behind two fake channels:

- MockStandardChannel: one transaction at a time, scripted outcomes
- MockAtomicChannel: all-or-none bundles sharing the same ledger
"""

import base64
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from splforge.shared.execution.execution_result import (
    BundleStatus,
    ErrorKind,
    SubmissionError,
    TxState,
    TxStatus,
)


LAMPORTS_PER_SOL = 1_000_000_000

# Scripted outcome for one send / one bundle:
#   "land"          confirmed
#   "pending"       never confirms (timeout)
#   "fail:<error>"  on-chain failure with <error>
#   Exception       raised by the send call itself
Outcome = Union[str, BaseException]


class MockStandardChannel:
    """
    Usage:
        chain = MockStandardChannel(script=["land", "land", "fail:custom program error: 0x1"])
        sig = await chain.send_transaction(tx)
        status = await chain.get_signature_status(sig)
    """

    def __init__(self, script: Optional[List[Outcome]] = None, default_balance: int = 100 * LAMPORTS_PER_SOL):
        self.script: List[Outcome] = list(script or [])
        self.default_balance = default_balance
        self.balances: Dict[str, int] = {}
        self.token_balances: Dict[Tuple[str, str], int] = {}
        self.token_accounts: Dict[str, int] = {}
        self.mint_supplies: Dict[str, Optional[int]] = {}
        self.existing: Set[str] = set()
        self.statuses: Dict[str, TxStatus] = {}
        self.sent: List[str] = []
        self.sent_transactions: List[VersionedTransaction] = []
        self.blockhashes = 0
        # Raised, in order, by the next get_latest_blockhash calls
        self.blockhash_errors: List[BaseException] = []
        self.status_error: Optional[BaseException] = None

    # Submission

    async def get_latest_blockhash(self) -> Hash:
        self.blockhashes += 1
        if self.blockhash_errors:
            raise self.blockhash_errors.pop(0)
        return Hash.new_unique()

    async def send_transaction(self, tx) -> str:
        signature = str(tx.signatures[0])
        outcome = self.script.pop(0) if self.script else "land"
        if isinstance(outcome, BaseException):
            raise outcome
        self.sent.append(signature)
        self.sent_transactions.append(tx)
        self.apply(signature, outcome)
        return signature

    def apply(self, signature: str, outcome: str) -> None:
        if outcome == "land":
            self.statuses[signature] = TxStatus(TxState.CONFIRMED)
        elif outcome == "pending":
            self.statuses[signature] = TxStatus(TxState.PENDING)
        elif outcome.startswith("fail:"):
            self.statuses[signature] = TxStatus(TxState.FAILED, error=outcome[len("fail:"):])
        else:
            raise ValueError(f"Unknown scripted outcome {outcome!r}")

    async def get_signature_status(self, signature: str) -> TxStatus:
        if self.status_error is not None:
            raise self.status_error
        return self.statuses.get(signature, TxStatus(TxState.NOT_FOUND))

    # Lookups

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address, self.default_balance)

    async def account_exists(self, address: str) -> bool:
        return address in self.existing or address in self.token_accounts

    async def get_token_account_amount(self, account: str) -> Optional[int]:
        return self.token_accounts.get(account)

    async def get_token_balance(self, owner: str, mint: str) -> int:
        return self.token_balances.get((owner, mint), 0)

    async def get_mint_supply(self, mint: str) -> Optional[int]:
        return self.mint_supplies.get(mint, 0)

    async def get_minimum_balance_for_rent_exemption(self, space: int) -> int:
        return 890_880 + 6_960 * space

    def get_stats(self) -> dict:
        return {"sent": len(self.sent)}


class MockAtomicChannel:
    """
    All-or-none bundle channel: a landed bundle confirms every signature
    on the shared chain; anything else confirms none.

    Script entries: "land", "reject" (raises BundleRejected), "leader"
    (raises NoAtomicSlot), "fail" / "invalid" (status), "pending".
    """

    def __init__(self, chain: MockStandardChannel, script: Optional[List[str]] = None, available: bool = True):
        self.chain = chain
        self.script: List[str] = list(script or [])
        self.available = available
        self.bundles: List[List[str]] = []  # signatures per submitted bundle
        self._statuses: Dict[str, BundleStatus] = {}

    async def is_available(self) -> bool:
        return self.available

    async def submit_bundle(self, serialized_transactions: List[str]) -> str:
        signatures = [
            str(VersionedTransaction.from_bytes(base64.b64decode(s)).signatures[0])
            for s in serialized_transactions
        ]
        outcome = self.script.pop(0) if self.script else "land"
        if outcome == "reject":
            raise SubmissionError(ErrorKind.BUNDLE_REJECTED, "Bundle rejected by block engine")
        if outcome == "leader":
            raise SubmissionError(ErrorKind.NO_ATOMIC_SLOT, "No Jito leader in upcoming slots")

        self.bundles.append(signatures)
        bundle_id = f"bundle_{len(self.bundles)}"
        if outcome == "land":
            for signature in signatures:
                self.chain.statuses[signature] = TxStatus(TxState.CONFIRMED)
            self._statuses[bundle_id] = BundleStatus.LANDED
        elif outcome == "fail":
            self._statuses[bundle_id] = BundleStatus.FAILED
        elif outcome == "invalid":
            self._statuses[bundle_id] = BundleStatus.INVALID
        else:
            self._statuses[bundle_id] = BundleStatus.PENDING
        return bundle_id

    async def get_bundle_status(self, bundle_id: str) -> BundleStatus:
        return self._statuses.get(bundle_id, BundleStatus.PENDING)


def new_address() -> str:
    return str(Keypair().pubkey())
