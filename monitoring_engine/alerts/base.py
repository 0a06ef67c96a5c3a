"""通知发送器基类"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from ..models.monitoring import NotificationMessage


class BaseSender(ABC):
    """通知发送器抽象基类，每种传输方式一个实现"""

    def __init__(self, name: str, config: Optional[Dict[str, Any]] = None):
        """
        初始化发送器

        Args:
            name: 发送器名称
            config: 发送器配置参数
        """
        self.name = name
        self.config = config or {}
        self.sender_type = self.__class__.__name__.replace('Sender', '').lower()

    @abstractmethod
    async def send(self, message: NotificationMessage) -> None:
        """
        发送一条通知

        Args:
            message: 通知消息，secret 为本次调用解密出的凭据

        Raises:
            AlertConfigError: 渠道配置错误，重试无意义
            AlertSendError: 发送失败
        """
        pass

    @abstractmethod
    def validate_config(self) -> bool:
        """
        验证配置参数是否有效

        Returns:
            bool: 配置是否有效
        """
        pass

    def get_timeout(self) -> int:
        """
        获取超时时间配置

        Returns:
            int: 超时时间（秒）
        """
        return self.config.get('timeout', 10)
