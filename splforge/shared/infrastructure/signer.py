"""
Keypair Signing Service
=======================
In-process signing over solders Keypairs.

The orchestration core only calls `sign(signer, payload)`; remote or
hardware signers substitute by implementing the same coroutine.
"""

from typing import Dict, Iterable, Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from config.settings import Settings
from splforge.shared.system.logging import Logger
from splforge.shared.execution.execution_result import SigningError


class KeypairSigningService:
    """
    Usage:
        signer = KeypairSigningService([payer_keypair])
        sig = await signer.sign(payer_keypair.pubkey(), message_bytes)
    """

    def __init__(self, keypairs: Optional[Iterable[Keypair]] = None):
        self._keypairs: Dict[Pubkey, Keypair] = {}
        self._signed = 0
        for kp in keypairs or []:
            self.add(kp)

    @classmethod
    def from_env(cls) -> "KeypairSigningService":
        """Load the payer from SOLANA_PRIVATE_KEY (base58)."""
        if not Settings.PRIVATE_KEY:
            raise SigningError("SOLANA_PRIVATE_KEY is not set")
        try:
            keypair = Keypair.from_base58_string(Settings.PRIVATE_KEY)
        except ValueError as e:
            raise SigningError(f"Invalid SOLANA_PRIVATE_KEY: {e}") from e
        return cls([keypair])

    def add(self, keypair: Keypair) -> None:
        self._keypairs[keypair.pubkey()] = keypair
        Logger.debug(f"[SIGNER] Registered {str(keypair.pubkey())[:8]}...")

    def has_signer(self, signer) -> bool:
        return self._to_pubkey(signer) in self._keypairs

    async def sign(self, signer, payload: bytes) -> Signature:
        key = self._to_pubkey(signer)
        keypair = self._keypairs.get(key)
        if keypair is None:
            raise SigningError(f"No key available for signer {key}", signer=str(key))
        self._signed += 1
        return keypair.sign_message(payload)

    @staticmethod
    def _to_pubkey(signer) -> Pubkey:
        if isinstance(signer, Pubkey):
            return signer
        try:
            return Pubkey.from_string(str(signer))
        except ValueError as e:
            raise SigningError(f"Invalid signer address: {signer}", signer=str(signer)) from e

    def get_stats(self) -> dict:
        return {"signers": len(self._keypairs), "signatures": self._signed}
