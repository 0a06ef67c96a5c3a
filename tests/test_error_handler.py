"""测试重试机制"""

from unittest.mock import patch, AsyncMock

import pytest

from monitoring_engine.utils.error_handler import (
    RetryConfig, RetryHandler, RetryStrategy, retry_on_error
)
from monitoring_engine.utils.exceptions import AlertConfigError, AlertSendError


class TestRetryHandler:
    """测试RetryHandler类"""

    def test_exponential_delay(self):
        handler = RetryHandler(RetryConfig(base_delay=1.0, jitter=False))
        assert [handler.calculate_delay(i) for i in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_linear_and_fixed_delay(self):
        linear = RetryHandler(RetryConfig(base_delay=2.0, jitter=False,
                                          strategy=RetryStrategy.LINEAR_BACKOFF))
        fixed = RetryHandler(RetryConfig(base_delay=2.0, jitter=False,
                                         strategy=RetryStrategy.FIXED_DELAY))
        assert linear.calculate_delay(3) == 6.0
        assert fixed.calculate_delay(3) == 2.0

    def test_delay_capped(self):
        handler = RetryHandler(RetryConfig(base_delay=10.0, max_delay=15.0, jitter=False))
        assert handler.calculate_delay(5) == 15.0

    def test_jitter_range(self):
        handler = RetryHandler(RetryConfig(base_delay=4.0, jitter=True))
        for _ in range(20):
            assert 2.0 <= handler.calculate_delay(1) <= 4.0

    def test_should_retry(self):
        handler = RetryHandler(RetryConfig(max_attempts=3))
        assert handler.should_retry(ConnectionError(), 1)
        assert handler.should_retry(AlertSendError("5xx"), 2)
        assert not handler.should_retry(AlertSendError("5xx"), 3)
        assert not handler.should_retry(AlertConfigError("400"), 1)
        assert not handler.should_retry(ValueError(), 1)

    def test_retryable_errors_override(self):
        handler = RetryHandler(RetryConfig(retryable_errors=[ValueError]))
        assert handler.should_retry(ValueError(), 1)
        assert not handler.should_retry(ConnectionError(), 1)


class FlakySender:
    """前几次调用失败的发送器"""

    def __init__(self, failures, max_retries=2, retry_delay=0):
        self.failures = failures
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.calls = 0

    @retry_on_error(max_attempts=5, base_delay=1.0)
    async def send(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise AlertSendError("暂时失败")
        return 'sent'


class TestRetryOnError:
    """测试retry_on_error装饰器"""

    @pytest.mark.asyncio
    async def test_succeeds_after_retries(self):
        sender = FlakySender(failures=2)
        with patch('monitoring_engine.utils.error_handler.asyncio.sleep',
                   new_callable=AsyncMock) as sleep:
            assert await sender.send() == 'sent'
        assert sender.calls == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_owner_limits_attempts(self):
        """对象的 max_retries 覆盖装饰器默认值"""
        sender = FlakySender(failures=10, max_retries=1)
        with patch('monitoring_engine.utils.error_handler.asyncio.sleep',
                   new_callable=AsyncMock):
            with pytest.raises(AlertSendError):
                await sender.send()
        assert sender.calls == 2

    @pytest.mark.asyncio
    async def test_non_recoverable_not_retried(self):
        calls = []

        @retry_on_error(max_attempts=3, base_delay=0)
        async def send():
            calls.append(1)
            raise AlertConfigError("令牌无效")

        with pytest.raises(AlertConfigError):
            await send()
        assert len(calls) == 1
