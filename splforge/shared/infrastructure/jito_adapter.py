"""
Jito Block Engine Adapter (Async)
=================================
Atomic submission channel: an ordered bundle of up to five
transactions lands all-or-nothing.

Features:
- Async HTTP (httpx) JSON-RPC
- Regional failover with rotation
- Classified errors (BundleRejected / NoAtomicSlot / AtomicChannelUnavailable)
"""

import time
import random
import asyncio
from typing import List, Optional, Dict, Any

import httpx

from config.settings import Settings
from splforge.shared.execution.execution_result import BundleStatus, ErrorKind, SubmissionError
from splforge.shared.system.logging import Logger


_STATUS_MAP = {
    "Landed": BundleStatus.LANDED,
    "Pending": BundleStatus.PENDING,
    "Failed": BundleStatus.FAILED,
    "Invalid": BundleStatus.INVALID,
}


class JitoAdapter:
    REGIONAL_ENDPOINTS = {
        "mainnet": "https://mainnet.block-engine.jito.wtf/api/v1/bundles",
        "frankfurt": "https://frankfurt.mainnet.block-engine.jito.wtf/api/v1/bundles",
        "amsterdam": "https://amsterdam.mainnet.block-engine.jito.wtf/api/v1/bundles",
        "ny": "https://ny.mainnet.block-engine.jito.wtf/api/v1/bundles",
        "tokyo": "https://tokyo.mainnet.block-engine.jito.wtf/api/v1/bundles",
    }

    TESTNET_ENDPOINTS = {
        "dallas": "https://dallas.testnet.block-engine.jito.wtf/api/v1/bundles",
        "ny": "https://ny.testnet.block-engine.jito.wtf/api/v1/bundles",
    }

    TIP_CACHE_TTL = 300
    REQUEST_TIMEOUT = 5
    RATE_LIMIT_COOLDOWN = 5
    RATE_LIMIT_BACKOFF = 0.2
    ERROR_BACKOFF = 0.5

    def __init__(
        self,
        region: Optional[str] = None,
        network: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        shuffle: bool = True,
    ):
        region = region or Settings.JITO_REGION
        self.network = network or Settings.NETWORK
        table = self.TESTNET_ENDPOINTS if self.network == "testnet" else self.REGIONAL_ENDPOINTS
        all_endpoints = list(table.values())
        preferred = table.get(region, all_endpoints[0])
        fallback = [ep for ep in all_endpoints if ep != preferred]
        if shuffle:
            random.shuffle(fallback)
        self._endpoints = [preferred] + fallback
        self._current_endpoint_idx = 0
        self.api_url = self._endpoints[0]
        self._client = client

        self._tip_accounts: List[str] = []
        self._tip_accounts_fetched = 0.0
        self._bundles_submitted = 0
        self._bundles_landed = 0
        self._bundles_rejected = 0
        self._rate_limited_until = 0.0

    def _rotate_endpoint(self):
        self._current_endpoint_idx = (self._current_endpoint_idx + 1) % len(self._endpoints)
        self.api_url = self._endpoints[self._current_endpoint_idx]
        Logger.info(f"[JITO] Rotating endpoint to: {self.api_url.split('//')[1].split('.')[0]}...")

    async def _rpc_call(self, method: str, params: Optional[list] = None) -> Dict[str, Any]:
        if time.time() < self._rate_limited_until:
            raise SubmissionError(
                ErrorKind.ATOMIC_CHANNEL_UNAVAILABLE,
                "Jito endpoints cooling down after repeated failures",
                {"method": method},
            )

        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}

        if self._client is not None:
            return await self._post_with_failover(self._client, method, payload)
        async with httpx.AsyncClient(timeout=self.REQUEST_TIMEOUT) as client:
            return await self._post_with_failover(client, method, payload)

    async def _post_with_failover(
        self, client: httpx.AsyncClient, method: str, payload: dict
    ) -> Dict[str, Any]:
        last_error = ""
        for _ in range(len(self._endpoints)):
            try:
                response = await client.post(self.api_url, json=payload)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                Logger.debug(f"[JITO] Transport error: {last_error}")
                self._rotate_endpoint()
                await asyncio.sleep(self.ERROR_BACKOFF)
                continue

            if response.status_code == 200:
                return response.json()
            if response.status_code == 429:
                last_error = "HTTP 429"
                Logger.warning(f"[JITO] Rate Limit (429) on {self.api_url}")
                self._rotate_endpoint()
                await asyncio.sleep(self.RATE_LIMIT_BACKOFF)
                continue

            last_error = f"HTTP {response.status_code}"
            Logger.debug(f"[JITO] {last_error}")
            self._rotate_endpoint()

        self._rate_limited_until = time.time() + self.RATE_LIMIT_COOLDOWN
        Logger.warning(f"[JITO] All regions failed. Cooldown {self.RATE_LIMIT_COOLDOWN}s")
        raise SubmissionError(
            ErrorKind.ATOMIC_CHANNEL_UNAVAILABLE,
            f"All Jito endpoints failed for {method}",
            {"last_error": last_error},
        )

    # ═══════════════════════════════════════════════════════════════════
    # TIP ACCOUNTS / AVAILABILITY
    # ═══════════════════════════════════════════════════════════════════

    async def get_tip_accounts(self, force_refresh: bool = False) -> List[str]:
        now = time.time()
        if not force_refresh and self._tip_accounts:
            if now - self._tip_accounts_fetched < self.TIP_CACHE_TTL:
                return self._tip_accounts

        response = await self._rpc_call("getTipAccounts")
        accounts = response.get("result", [])
        if isinstance(accounts, list) and accounts:
            self._tip_accounts = accounts
            self._tip_accounts_fetched = now
            Logger.info(f"[JITO] Cached {len(accounts)} tip accounts")
        return self._tip_accounts

    async def get_random_tip_account(self) -> Optional[str]:
        accounts = await self.get_tip_accounts()
        return random.choice(accounts) if accounts else None

    async def is_available(self) -> bool:
        """Reachable and serving tip accounts for this network."""
        if self.network not in Settings.JITO_NETWORKS:
            return False
        try:
            accounts = await self.get_tip_accounts()
        except SubmissionError as e:
            Logger.debug(f"[JITO] Unavailable: {e.message}")
            return False
        return len(accounts) > 0

    # ═══════════════════════════════════════════════════════════════════
    # BUNDLES
    # ═══════════════════════════════════════════════════════════════════

    async def submit_bundle(self, serialized_transactions: List[str]) -> str:
        """Send base64 transactions as one bundle; returns the bundle id."""
        if not serialized_transactions:
            raise ValueError("Bundle must contain at least one transaction")
        if len(serialized_transactions) > Settings.MAX_BUNDLE_SIZE:
            raise ValueError(
                f"Bundle of {len(serialized_transactions)} exceeds {Settings.MAX_BUNDLE_SIZE}"
            )

        response = await self._rpc_call(
            "sendBundle", [serialized_transactions, {"encoding": "base64"}]
        )
        self._bundles_submitted += 1

        bundle_id = response.get("result")
        if bundle_id:
            Logger.info(f"[JITO] Bundle submitted: {bundle_id[:16]}...")
            return bundle_id

        self._bundles_rejected += 1
        error = response.get("error") or {}
        message = str(error.get("message", error)) if isinstance(error, dict) else str(error)
        kind = ErrorKind.NO_ATOMIC_SLOT if "leader" in message.lower() else ErrorKind.BUNDLE_REJECTED
        Logger.warning(f"[JITO] Submit failed: {message}")
        raise SubmissionError(kind, f"Bundle rejected: {message}", {"error": error})

    async def get_bundle_status(self, bundle_id: str) -> BundleStatus:
        response = await self._rpc_call("getInflightBundleStatuses", [[bundle_id]])
        result = response.get("result") or {}
        values = result.get("value") or []
        if not values:
            return BundleStatus.PENDING
        entry = values[0] if isinstance(values, list) else values
        status = _STATUS_MAP.get(entry.get("status", ""), BundleStatus.PENDING)
        if status == BundleStatus.LANDED:
            self._bundles_landed += 1
            Logger.info(f"[JITO] Bundle LANDED: {bundle_id[:16]}...")
        elif status in (BundleStatus.FAILED, BundleStatus.INVALID):
            Logger.warning(f"[JITO] Bundle {status.value.upper()}: {bundle_id[:16]}...")
        return status

    def get_stats(self) -> Dict[str, int]:
        return {
            "bundles_submitted": self._bundles_submitted,
            "bundles_landed": self._bundles_landed,
            "bundles_rejected": self._bundles_rejected,
        }
