"""重试机制

引擎本身不做同步重试，重试策略只属于通知发送器等外部协作方。
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Callable, Optional, List, TypeVar, Awaitable

from .exceptions import MonitoringError

T = TypeVar('T')
logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """重试策略"""
    FIXED_DELAY = "fixed_delay"
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    LINEAR_BACKOFF = "linear_backoff"


@dataclass
class RetryConfig:
    """重试配置"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retryable_errors: Optional[List[type]] = None


class RetryHandler:
    """重试处理器"""

    def __init__(self, config: RetryConfig):
        self.config = config

    def calculate_delay(self, attempt: int) -> float:
        """计算第 attempt 次失败后的等待时间"""
        if self.config.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = self.config.base_delay * (
                self.config.backoff_multiplier ** (attempt - 1))
        elif self.config.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = self.config.base_delay * attempt
        else:
            delay = self.config.base_delay

        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            delay = delay * (0.5 + random.random() * 0.5)

        return delay

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """判断是否应该重试"""
        if attempt >= self.config.max_attempts:
            return False

        if self.config.retryable_errors:
            return any(isinstance(error, error_type) for error_type in
                       self.config.retryable_errors)

        # MonitoringError 以 recoverable 标志为准
        if isinstance(error, MonitoringError):
            return error.recoverable

        return isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError))


def retry_on_error(
        max_attempts: int = 3,
        base_delay: float = 1.0,
        strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF,
        retryable_errors: Optional[List[type]] = None
):
    """协程重试装饰器

    被装饰的对象可以通过 `max_retries`/`retry_delay` 属性覆盖默认参数。
    """
    default_config = RetryConfig(
        max_attempts=max_attempts,
        base_delay=base_delay,
        strategy=strategy,
        retryable_errors=retryable_errors
    )

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def async_wrapper(*args, **kwargs) -> T:
            config = default_config
            owner = args[0] if args else None
            if owner is not None and hasattr(owner, 'max_retries'):
                config = RetryConfig(
                    max_attempts=max(1, int(owner.max_retries) + 1),
                    base_delay=float(getattr(owner, 'retry_delay', base_delay)),
                    strategy=strategy,
                    retryable_errors=retryable_errors
                )
            retry_handler = RetryHandler(config)

            for attempt in range(1, config.max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as error:
                    if not retry_handler.should_retry(error, attempt):
                        logger.debug(f"{func.__name__} 不再重试: {error}")
                        raise

                    delay = retry_handler.calculate_delay(attempt)
                    logger.warning(
                        f"{func.__name__} 执行失败 (尝试 {attempt}/{config.max_attempts}): "
                        f"{error}，{delay:.2f}秒后重试"
                    )
                    await asyncio.sleep(delay)

            # should_retry 在最后一次尝试时必然返回 False，这里不可达
            raise RuntimeError(f"{func.__name__} 重试次数耗尽")

        return async_wrapper

    return decorator
