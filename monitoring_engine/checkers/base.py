"""探测器基类"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import replace

from ..models.monitoring import Target, MonitorSettings, CheckResult, utcnow
from ..utils.exceptions import InvalidTargetError
from ..utils.log_manager import get_logger
from .error_kind import classify_exception, describe_error


class BaseProber(ABC):
    """探测器抽象基类

    子类只需实现 validate_config 和 _probe；check() 负责超时、计时和异常归类，
    任何失败都会转换成 ok=False 的 CheckResult，不向调用方抛出。
    """

    def __init__(self, target: Target, settings: MonitorSettings):
        """
        初始化探测器

        Args:
            target: 监控目标
            settings: 引擎全局设置
        """
        self.target = target
        self.settings = settings
        self.kind = self.__class__.__name__.replace('Prober', '').lower()
        self.logger = get_logger(f'checker.{self.kind}.{target.name}')

    @abstractmethod
    async def _probe(self, timeout: float) -> CheckResult:
        """
        执行一次探测

        失败时可以直接抛出异常，由 check() 统一归类。

        Args:
            timeout: 本次探测的超时时间（秒）

        Returns:
            CheckResult: 探测结果，latency 由 check() 填写
        """
        pass

    @abstractmethod
    def validate_config(self) -> bool:
        """
        验证目标配置是否可以探测

        Returns:
            bool: 配置是否有效
        """
        pass

    def get_timeout(self) -> int:
        """
        获取超时时间：目标配置 → 全局默认 → 20秒

        Returns:
            int: 超时时间（秒）
        """
        return self.target.effective_timeout(self.settings)

    async def check(self) -> CheckResult:
        """
        执行探测并返回结果，永不抛出异常（取消除外）

        Returns:
            CheckResult: 探测结果
        """
        timeout = self.get_timeout()
        checked_at = utcnow()
        start = time.monotonic()
        try:
            if not self.validate_config():
                raise InvalidTargetError(
                    f"目标 '{self.target.name}' 的地址配置无效",
                    target_name=self.target.name, kind=self.kind)
            result = await asyncio.wait_for(self._probe(timeout), timeout=timeout)
            result = replace(result, latency=time.monotonic() - start, checked_at=checked_at)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind = classify_exception(e)
            result = CheckResult(
                ok=False,
                latency=time.monotonic() - start,
                error=describe_error(kind, e),
                error_kind=kind,
                checked_at=checked_at
            )

        if result.ok:
            self.logger.debug(f"探测成功，耗时 {result.latency:.3f}秒")
        else:
            self.logger.debug(f"探测失败 [{result.error_kind.value}]: {result.error}")
        return result
