"""
Metadata Store Client
=====================
Rollback hook for metadata uploaded to a content-addressed store.

Uploads happen outside the orchestrator; the core only hands back the
URI on failure. Rollback is best-effort: failures are reported in the
returned status, never raised.
"""

import re
from typing import Dict, Optional

import httpx

from config.settings import Settings
from splforge.shared.system.logging import Logger


_CID_PATTERNS = (
    re.compile(r"^ipfs://(?:ipfs/)?([A-Za-z0-9]+)"),
    re.compile(r"/ipfs/([A-Za-z0-9]+)"),
)


def extract_cid(uri: str) -> Optional[str]:
    for pattern in _CID_PATTERNS:
        match = pattern.search(uri)
        if match:
            return match.group(1)
    return None


class MetadataStoreClient:
    """
    Pinning-service client (IPFS Pinning Service API: DELETE /pins/{cid}).

    Statuses: unpinned, inline_no_action, not_tracked, rollback_failed.
    """

    REQUEST_TIMEOUT = 10.0

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url if base_url is not None else Settings.METADATA_STORE_URL).rstrip("/")
        self.token = token if token is not None else Settings.METADATA_STORE_TOKEN
        self._client = client
        self._unpinned = 0
        self._failed = 0

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def rollback_upload(self, uri: str) -> Dict[str, str]:
        if not uri or uri.startswith("data:"):
            return {"uri": uri, "status": "inline_no_action"}

        cid = extract_cid(uri)
        if cid is None or not self.base_url:
            return {"uri": uri, "status": "not_tracked"}

        try:
            if self._client is not None:
                response = await self._client.delete(f"{self.base_url}/pins/{cid}", headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=self.REQUEST_TIMEOUT) as client:
                    response = await client.delete(f"{self.base_url}/pins/{cid}", headers=self._headers())
        except httpx.HTTPError as e:
            self._failed += 1
            Logger.warning(f"[METADATA] Unpin failed for {cid}: {e}")
            return {"uri": uri, "status": "rollback_failed", "error": str(e)}

        if response.status_code in (200, 202, 204):
            self._unpinned += 1
            Logger.info(f"[METADATA] Unpinned {cid}")
            return {"uri": uri, "status": "unpinned"}
        if response.status_code == 404:
            return {"uri": uri, "status": "not_tracked"}

        self._failed += 1
        Logger.warning(f"[METADATA] Unpin {cid} returned HTTP {response.status_code}")
        return {"uri": uri, "status": "rollback_failed", "error": f"HTTP {response.status_code}"}

    def get_stats(self) -> dict:
        return {"unpinned": self._unpinned, "failed": self._failed}
