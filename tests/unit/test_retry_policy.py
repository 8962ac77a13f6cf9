"""
Retry Policy Unit Tests
=======================
"""

import pytest


class TestRetryPolicy:
    def test_delay_grows_geometrically(self):
        from splforge.shared.execution.retry_policy import RetryPolicy

        policy = RetryPolicy(max_retries=5, base_delay=2.0, backoff_multiplier=2.0)

        assert policy.delay_for(1) == 2.0
        assert policy.delay_for(2) == 4.0
        assert policy.delay_for(3) == 8.0

    @pytest.mark.parametrize("kwargs", [
        {"max_retries": 0, "base_delay": 1.0},
        {"max_retries": 1, "base_delay": -1.0},
        {"max_retries": 1, "base_delay": 1.0, "backoff_multiplier": 0.5},
        {"max_retries": 1, "base_delay": 1.0, "fee_multiplier": 0.9},
    ])
    def test_invalid_policies_rejected(self, kwargs):
        from splforge.shared.execution.retry_policy import RetryPolicy

        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_policy_is_frozen(self):
        import dataclasses
        from splforge.shared.execution.retry_policy import RetryPolicy

        policy = RetryPolicy(max_retries=1, base_delay=1.0)

        with pytest.raises(dataclasses.FrozenInstanceError):
            policy.max_retries = 3


class TestDefaultTable:
    def test_default_entries(self):
        from splforge.shared.execution.execution_result import ErrorKind
        from splforge.shared.execution.retry_policy import policy_for

        congestion = policy_for(ErrorKind.NETWORK_CONGESTION)
        rejected = policy_for(ErrorKind.BUNDLE_REJECTED)
        unavailable = policy_for(ErrorKind.ATOMIC_CHANNEL_UNAVAILABLE)

        assert (congestion.max_retries, congestion.base_delay, congestion.jitter) == (5, 2.0, True)
        assert (rejected.max_retries, rejected.escalate_fee, rejected.fee_multiplier) == (3, True, 1.5)
        assert unavailable.max_retries == 2
        assert policy_for(ErrorKind.TRANSPORT_ERROR).max_retries == 4

    @pytest.mark.parametrize("kind", [
        "ProgramError", "SimulationFailed", "AccountNotFound",
        "ConfirmationTimeout", "Validation", "Signing", "Unknown",
    ])
    def test_terminal_kinds_have_no_policy(self, kind):
        from splforge.shared.execution.execution_result import ErrorKind
        from splforge.shared.execution.retry_policy import policy_for

        assert policy_for(ErrorKind(kind)) is None

    def test_table_is_read_only(self):
        from splforge.shared.execution.execution_result import ErrorKind
        from splforge.shared.execution.retry_policy import DEFAULT_RETRY_POLICIES

        with pytest.raises(TypeError):
            DEFAULT_RETRY_POLICIES[ErrorKind.PROGRAM_ERROR] = None

    def test_custom_table_overrides(self):
        from splforge.shared.execution.execution_result import ErrorKind
        from splforge.shared.execution.retry_policy import RetryPolicy, policy_for

        custom = {ErrorKind.PROGRAM_ERROR: RetryPolicy(max_retries=2, base_delay=0.0)}

        assert policy_for(ErrorKind.PROGRAM_ERROR, custom).max_retries == 2
        assert policy_for(ErrorKind.NETWORK_CONGESTION, custom) is None
