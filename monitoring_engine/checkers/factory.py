"""探测器工厂"""

from typing import Dict, Type

from .base import BaseProber
from ..models.monitoring import Target, MonitorSettings, CheckResult, ErrorKind
from ..utils.exceptions import CheckerError


class ProberFactory:
    """探测器工厂类，负责创建和管理不同类型的探测器"""

    def __init__(self):
        self._probers: Dict[str, Type[BaseProber]] = {}

    def register_checker(self, kind: str, prober_class: Type[BaseProber]):
        """
        注册探测器类

        Args:
            kind: 目标类型名称
            prober_class: 探测器类

        Raises:
            CheckerError: 注册失败
        """
        if not issubclass(prober_class, BaseProber):
            raise CheckerError(f"探测器类 {prober_class.__name__} 必须继承自 BaseProber")

        if kind in self._probers:
            raise CheckerError(f"目标类型 '{kind}' 已经注册了探测器")

        self._probers[kind] = prober_class

    def create_checker(self, target: Target, settings: MonitorSettings) -> BaseProber:
        """
        创建探测器实例

        Args:
            target: 监控目标
            settings: 引擎全局设置

        Returns:
            BaseProber: 探测器实例

        Raises:
            CheckerError: 目标类型不支持
        """
        if target.kind not in self._probers:
            raise CheckerError(f"不支持的目标类型: '{target.kind}'",
                               target_name=target.name, kind=target.kind,
                               recoverable=False)
        return self._probers[target.kind](target, settings)

    def get_supported_types(self) -> list:
        return list(self._probers.keys())

    def is_type_supported(self, kind: str) -> bool:
        return kind in self._probers


# 全局工厂实例
prober_factory = ProberFactory()


def register_checker(kind: str):
    """
    装饰器：注册探测器类

    Args:
        kind: 目标类型名称

    Returns:
        装饰器函数
    """
    def decorator(prober_class: Type[BaseProber]):
        prober_factory.register_checker(kind, prober_class)
        return prober_class

    return decorator


async def probe(target: Target, settings: MonitorSettings) -> CheckResult:
    """
    对目标执行一次探测

    Args:
        target: 监控目标
        settings: 引擎全局设置

    Returns:
        CheckResult: 探测结果；不支持的类型也以失败结果返回
    """
    try:
        prober = prober_factory.create_checker(target, settings)
    except CheckerError:
        return CheckResult(ok=False, latency=0.0,
                           error=f"unsupported_kind: {target.kind}",
                           error_kind=ErrorKind.INVALID_URL)
    return await prober.check()
