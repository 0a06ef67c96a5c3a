"""检查重试与调度抖动

失败后的重试不在检查内部 sleep，而是把下一次检查提前到 retry_at；
抖动把同一间隔的目标错开，避免同一时刻集中发起探测。
两者都按目标ID确定性地计算，重启后保持不变。
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..models.monitoring import CheckResult, ErrorKind, MonitorSettings, Target, TargetState

_MASK64 = 0xFFFFFFFFFFFFFFFF
_GOLDEN_GAMMA = 0x9E3779B97F4A7C15

# HTTP 状态码不符、URL 无效、私网拦截等结果重试也不会改变
RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.DNS,
    ErrorKind.CONNECT,
    ErrorKind.TLS,
    ErrorKind.CONNECTION_REFUSED,
    ErrorKind.NETWORK_UNREACHABLE,
    ErrorKind.REQUEST_FAILED,
})

MAX_RETRY_JITTER_MS = 2000


def splitmix64(value: int) -> int:
    """SplitMix64 混合函数"""
    value = (value + _GOLDEN_GAMMA) & _MASK64
    value = ((value ^ (value >> 30)) * 0xBF58476D1CE4E5B9) & _MASK64
    value = ((value ^ (value >> 27)) * 0x94D049BB133111EB) & _MASK64
    return value ^ (value >> 31)


def target_seed(target_id: str) -> int:
    """目标ID的稳定种子（内置 hash() 每个进程加盐，不能用）"""
    digest = hashlib.sha256(target_id.encode('utf-8')).digest()
    return int.from_bytes(digest[:8], 'big')


def jitter_delay_seconds(target_id: str, interval_seconds: int,
                         percent: int, max_seconds: int) -> int:
    """
    目标的调度抖动秒数

    抖动窗口为检查间隔的 percent%，不超过 max_seconds（max_seconds<=0 表示不限），
    结果落在 [0, 窗口] 内。
    """
    if percent <= 0 or interval_seconds <= 0:
        return 0
    window = interval_seconds * percent // 100
    if max_seconds > 0:
        window = min(window, max_seconds)
    if window <= 0:
        return 0
    return splitmix64(target_seed(target_id)) % (window + 1)


def retry_delay(target_id: str, attempt: int, base_seconds: float) -> timedelta:
    """第 attempt 次重试的延迟：基础间隔加上确定性的毫秒级抖动（最多基础间隔的1/5，且不超过2秒）"""
    if base_seconds <= 0:
        base_seconds = 5
    max_jitter_ms = min(int(base_seconds * 1000) // 5, MAX_RETRY_JITTER_MS)
    if max_jitter_ms <= 0:
        return timedelta(seconds=base_seconds)
    seed = target_seed(target_id) ^ ((attempt * _GOLDEN_GAMMA) & _MASK64)
    jitter_ms = splitmix64(seed) % (max_jitter_ms + 1)
    return timedelta(seconds=base_seconds, milliseconds=jitter_ms)


@dataclass
class RetryDecision:
    """一次检查之后的重试安排"""
    scheduled: bool = False
    attempt: int = 0
    retry_at: Optional[datetime] = None


def decide_retry(target: Target, previous: Optional[TargetState], result: CheckResult,
                 now: datetime, settings: MonitorSettings) -> RetryDecision:
    """
    根据本次结果决定是否安排提前重试

    只有可重试的失败类型且未用完 target.retries 时才安排；
    成功或重试用完后清除重试状态。
    """
    if result.ok or result.error_kind not in RETRYABLE_KINDS:
        return RetryDecision()

    used = max(previous.retry_attempt if previous else 0, 0)
    if used >= max(target.retries, 0):
        return RetryDecision()

    attempt = used + 1
    delay = retry_delay(target.id, attempt, target.effective_retry_interval(settings))
    return RetryDecision(scheduled=True, attempt=attempt, retry_at=now + delay)


def eligible_at(target: Target, state: Optional[TargetState],
                settings: MonitorSettings) -> Optional[datetime]:
    """
    目标下一次可以检查的时间

    Returns:
        Optional[datetime]: 从未检查过时为 None，表示立即可检查
    """
    if state is None or state.last_checked_at is None:
        return None
    if state.retry_at is not None:
        return state.retry_at

    interval = target.effective_interval(settings)
    delay = jitter_delay_seconds(target.id, interval, settings.jitter_percent,
                                 settings.jitter_max_seconds)
    return state.last_checked_at + timedelta(seconds=interval + delay)
