"""
Mock RPC Helpers
================
Response shapes shared by the adapter tests.
"""

import json
from types import SimpleNamespace


def value(v):
    """solana-py responses expose their payload as `.value`."""
    return SimpleNamespace(value=v)


def rpc_body(request) -> dict:
    """Decoded JSON-RPC body of an httpx request."""
    return json.loads(request.content.decode("utf-8"))
