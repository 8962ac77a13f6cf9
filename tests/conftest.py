"""
splforge Test Configuration
===========================
Shared fixtures and pytest markers for the test suite.
"""

import pytest
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


# ============================================================================
# PYTEST MARKERS
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "network: marks tests that require network access"
    )
    config.addinivalue_line(
        "markers", "integration: marks integration tests"
    )


# ============================================================================
# SHARED FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def quiet_logger():
    """Keep console output out of test runs (file log still written)."""
    from splforge.shared.system.logging import Logger

    Logger.set_silent(True)
    yield


@pytest.fixture
def payer_keypair():
    from solders.keypair import Keypair

    return Keypair()


@pytest.fixture
def payer(payer_keypair):
    return str(payer_keypair.pubkey())


@pytest.fixture
def signer(payer_keypair):
    from splforge.shared.infrastructure.signer import KeypairSigningService

    return KeypairSigningService([payer_keypair])


@pytest.fixture
def encoder():
    from splforge.shared.infrastructure.spl_encoder import SplInstructionEncoder

    return SplInstructionEncoder()


@pytest.fixture
def chain():
    from tests.mocks import MockStandardChannel

    return MockStandardChannel()


@pytest.fixture
def fast_gateway_config():
    """Poll ceilings small enough for timeouts to resolve instantly."""
    from splforge.execution.bundle_submitter import GatewayConfig

    return GatewayConfig(
        confirmation_max_polls=3,
        poll_interval_sec=0,
        bundle_status_polls=3,
        bundle_status_interval_sec=0,
    )


@pytest.fixture
def make_orchestrator(chain, signer, encoder, fast_gateway_config):
    """
    Factory for an Orchestrator wired to the in-memory chain.

    Usage:
        orchestrator = make_orchestrator(atomic_script=["reject", "land"])
    """
    import random
    from unittest.mock import AsyncMock

    from splforge.execution.orchestrator import Orchestrator
    from tests.mocks import MockAtomicChannel

    def factory(atomic_script=None, atomic=True, metadata_store=None, **kwargs):
        atomic_channel = MockAtomicChannel(chain, atomic_script) if atomic else None
        kwargs.setdefault("signer", signer)
        kwargs.setdefault("sleep", AsyncMock())
        return Orchestrator(
            channel=chain,
            encoder=encoder,
            atomic_channel=atomic_channel,
            metadata_store=metadata_store,
            gateway_config=fast_gateway_config,
            rng=random.Random(7),
            **kwargs,
        )

    return factory
