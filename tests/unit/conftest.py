"""
Unit Test Configuration
=======================
Fixtures for pure logic tests - NO I/O ALLOWED.

All unit tests should be completely isolated from:
- Network (RPC, HTTP)
- File system (except tmp_path)
"""

import pytest


# ============================================================================
# AUTOUSE: ENFORCE I/O ISOLATION
# ============================================================================


@pytest.fixture(autouse=True)
def isolate_unit_tests(monkeypatch):
    """
    Automatically disable all network I/O for unit tests.
    Any test that accidentally tries to make a network call will fail.
    """
    def block_network(*args, **kwargs):
        raise RuntimeError(
            "Network I/O detected in unit test! "
            "Unit tests must be pure logic with no external dependencies. "
            "Use integration tests for network-dependent code."
        )

    monkeypatch.setattr("httpx.AsyncClient.get", block_network)
    monkeypatch.setattr("httpx.AsyncClient.post", block_network)
    monkeypatch.setattr("httpx.AsyncClient.delete", block_network)


# ============================================================================
# EXECUTION FIXTURES
# ============================================================================


@pytest.fixture
def transfer_group(payer):
    """Factory for a one-instruction group with a manual TRANSFER effect."""
    from splforge.execution.schemas import (
        EffectKind,
        InstructionGroup,
        Reversibility,
        SideEffect,
    )
    from splforge.shared.infrastructure.spl_encoder import SplInstructionEncoder
    from tests.mocks import new_address

    encoder = SplInstructionEncoder()

    def factory(label="transfer", lamports=1_000):
        dest = new_address()
        return InstructionGroup(
            label=label,
            instructions=[encoder.transfer_native(payer, dest, lamports)],
            effects=[SideEffect(
                EffectKind.TRANSFER,
                wallet=payer,
                reversibility=Reversibility.REQUIRES_MANUAL_ACTION,
                target=f"{dest}#{label}",
                details={"amount": lamports, "to": dest},
            )],
        )

    return factory
