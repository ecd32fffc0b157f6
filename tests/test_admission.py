"""Tests for sliding-window admission control.

Invalid windows are logged and fall back to 60 seconds; an unavailable
counter store must never block a request.
"""
from unittest.mock import AsyncMock, patch

import pytest

from tenantauth.service.admission import (
    AUTH_POLICY,
    STRICT_POLICY,
    AdmissionController,
    MemoryCounterStore,
    RatePolicy,
)
from tenantauth.service.errors import RateLimitedError


@pytest.fixture
def controller(settings, clock):
    return AdmissionController(settings, clock=clock)


class TestPolicies:
    def test_default_policies_come_from_settings(self, controller):
        assert controller.policy(AUTH_POLICY) == RatePolicy(AUTH_POLICY, 5, 60)
        assert controller.policy(STRICT_POLICY) == RatePolicy(STRICT_POLICY, 3, 900)

    def test_unknown_policy(self, controller):
        with pytest.raises(ValueError):
            controller.policy("nope")


class TestSlidingWindow:
    async def test_limit_then_reject(self, controller):
        for expected_remaining in (4, 3, 2, 1, 0):
            decision = await controller.admit(AUTH_POLICY, "10.0.0.1")
            assert decision.allowed is True
            assert decision.remaining == expected_remaining

        with pytest.raises(RateLimitedError) as excinfo:
            await controller.admit(AUTH_POLICY, "10.0.0.1")
        assert excinfo.value.status_code == 429
        assert excinfo.value.error_code == "rate_limited"
        assert excinfo.value.retry_after == 60

    async def test_callers_are_counted_separately(self, controller):
        for _ in range(5):
            await controller.admit(AUTH_POLICY, "10.0.0.1")

        decision = await controller.admit(AUTH_POLICY, "10.0.0.2")

        assert decision.allowed is True

    async def test_policies_are_counted_separately(self, controller):
        for _ in range(5):
            await controller.admit(AUTH_POLICY, "10.0.0.1")

        decision = await controller.admit(STRICT_POLICY, "10.0.0.1")

        assert decision.allowed is True

    async def test_window_slides(self, controller, clock):
        await controller.admit(AUTH_POLICY, "caller")
        clock.advance(seconds=30)
        for _ in range(4):
            await controller.admit(AUTH_POLICY, "caller")

        rejected = await controller.check(AUTH_POLICY, "caller")
        assert rejected.allowed is False
        assert rejected.retry_after == 30

        clock.advance(seconds=30)
        decision = await controller.check(AUTH_POLICY, "caller")
        assert decision.allowed is True

    async def test_retry_after_is_at_least_one_second(self, controller, clock):
        for _ in range(5):
            await controller.admit(AUTH_POLICY, "caller")
        clock.advance(seconds=59, milliseconds=900)

        decision = await controller.check(AUTH_POLICY, "caller")

        assert decision.allowed is False
        assert decision.retry_after == 1

    async def test_zero_limit_always_passes(self, controller):
        policy = RatePolicy("open", 0, 60)
        for _ in range(20):
            assert (await controller.check(policy, "caller")).allowed is True

    async def test_invalid_window_logs_warning(self, controller):
        policy = RatePolicy("broken", 2, 0)

        with patch("tenantauth.service.admission.logger") as mock_logger:
            decision = await controller.check(policy, "caller")

        assert decision.allowed is True
        mock_logger.warning.assert_called_once()
        call_args = mock_logger.warning.call_args
        assert call_args[0][0] == "rate_limit_invalid_window"
        assert call_args[1]["window_seconds"] == 0

    async def test_valid_window_no_warning(self, controller):
        with patch("tenantauth.service.admission.logger") as mock_logger:
            await controller.check(AUTH_POLICY, "caller")

        mock_logger.warning.assert_not_called()


class TestStoreFailure:
    async def test_failing_store_falls_back_to_memory(self, settings, clock):
        broken = AsyncMock()
        broken.hit.side_effect = ConnectionError("redis down")
        fallback = MemoryCounterStore()
        controller = AdmissionController(settings, broken, fallback=fallback, clock=clock)

        with patch("tenantauth.service.admission.logger") as mock_logger:
            decision = await controller.check(AUTH_POLICY, "caller")

        assert decision.allowed is True
        assert decision.remaining == 4
        assert mock_logger.warning.call_args[0][0] == "admission_store_unavailable"
        assert mock_logger.warning.call_args[1]["error_type"] == "ConnectionError"

    async def test_fallback_still_enforces_limits(self, settings, clock):
        broken = AsyncMock()
        broken.hit.side_effect = TimeoutError("redis timeout")
        controller = AdmissionController(settings, broken, clock=clock)

        for _ in range(5):
            await controller.admit(AUTH_POLICY, "caller")
        with pytest.raises(RateLimitedError):
            await controller.admit(AUTH_POLICY, "caller")

    async def test_healthy_store_is_used(self, settings, clock):
        store = AsyncMock()
        store.hit.return_value = (False, 5, 12.2)
        controller = AdmissionController(settings, store, clock=clock)

        decision = await controller.check(AUTH_POLICY, "caller")

        assert decision.allowed is False
        assert decision.retry_after == 13
        store.hit.assert_awaited_once()
        key, limit, window, _ = store.hit.await_args[0]
        assert key == "auth:caller"
        assert (limit, window) == (5, 60)


class TestMemoryCounterStore:
    async def test_reset_clears_key(self):
        store = MemoryCounterStore()
        for i in range(3):
            await store.hit("k", 3, 60, 100.0 + i)
        assert (await store.hit("k", 3, 60, 103.0))[0] is False

        await store.reset("k")

        assert (await store.hit("k", 3, 60, 104.0))[0] is True
