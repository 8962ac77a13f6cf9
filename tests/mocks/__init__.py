"""
splforge Test Mocks
===================
Reusable fakes for isolated testing.
"""

from tests.mocks.mock_chain import MockAtomicChannel, MockStandardChannel, LAMPORTS_PER_SOL, new_address
from tests.mocks.mock_metadata_store import MockMetadataStore

__all__ = [
    "MockAtomicChannel",
    "MockStandardChannel",
    "MockMetadataStore",
    "LAMPORTS_PER_SOL",
    "new_address",
]
