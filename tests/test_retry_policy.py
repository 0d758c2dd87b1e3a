"""
Tests para RetryPolicy
"""

from unittest.mock import patch

import pytest

from cr_mobile.core.config import Settings
from cr_mobile.sync.retry_policy import RetryPolicy


class TestRetryPolicy:
    def test_exponential_backoff(self):
        """Verifica que el backoff es exponencial."""
        policy = RetryPolicy(base_delay=1.0, multiplier=2.0, jitter=False)

        assert [policy.get_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_max_delay_cap(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=False, max_retries=6)

        assert policy.get_delay(4) == 10.0

    def test_max_retries_exceeded(self):
        """Retorna None cuando se agotan los reintentos."""
        policy = RetryPolicy(max_retries=3)

        assert policy.get_delay(2) is not None
        assert policy.get_delay(3) is None

    def test_should_retry(self):
        policy = RetryPolicy(max_retries=3)

        assert policy.should_retry(2) is True
        assert policy.should_retry(3) is False

    def test_jitter_variation(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=100.0, jitter=True)

        assert 16.0 <= policy.get_delay(1) <= 24.0

    @pytest.mark.parametrize("factor, expected", [(0.8, 16.0), (1.2, 24.0)])
    def test_jitter_is_symmetric(self, factor, expected):
        policy = RetryPolicy(base_delay=10.0, max_delay=100.0, jitter=True)

        with patch("cr_mobile.sync.retry_policy.random.uniform", return_value=factor) as uniform:
            assert policy.get_delay(1) == pytest.approx(expected)
        uniform.assert_called_once_with(0.8, 1.2)

    def test_from_settings(self):
        settings = Settings(MAX_RETRIES=7, BACKOFF_BASE_MS=250, BACKOFF_MAX_MS=4000)

        policy = RetryPolicy.from_settings(settings)

        assert policy.base_delay == 0.25
        assert policy.max_delay == 4.0
        assert policy.max_retries == 7
        assert "max_retries=7" in repr(policy)

    def test_from_settings_follows_configured_schedule(self):
        """Sin jitter configurado la espera es exactamente base * 2^intentos."""
        policy = RetryPolicy.from_settings(Settings(BACKOFF_BASE_MS=1000))

        assert [policy.get_delay(n) for n in range(1, 5)] == [2.0, 4.0, 8.0, 16.0]

    def test_from_settings_with_jitter(self):
        policy = RetryPolicy.from_settings(Settings(BACKOFF_BASE_MS=1000, BACKOFF_JITTER=True))

        assert policy.jitter is True
        assert 1.6 <= policy.get_delay(1) <= 2.4
