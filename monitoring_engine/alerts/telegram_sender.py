"""Telegram 通知发送器"""

import asyncio
from typing import Dict, Any, Optional

import aiohttp

from .base import BaseSender
from ..models.monitoring import NotificationMessage
from ..utils.error_handler import retry_on_error
from ..utils.exceptions import AlertConfigError, AlertSendError
from ..utils.log_manager import get_logger

TELEGRAM_API_URL = 'https://api.telegram.org'


class TelegramSender(BaseSender):
    """通过 Telegram Bot API 的 sendMessage 发送通知

    机器人令牌由调度器在每次发送前解密后放入 message.secret，
    发送器本身不保存令牌。
    """

    def __init__(self, name: str = 'telegram', config: Optional[Dict[str, Any]] = None):
        super().__init__(name, config)
        self.logger = get_logger(f'alerter.telegram.{self.name}')

        self.base_url = self.config.get('base_url', TELEGRAM_API_URL).rstrip('/')
        self.max_retries = self.config.get('max_retries', 2)
        self.retry_delay = self.config.get('retry_delay', 1.0)

        if not self.validate_config():
            raise AlertConfigError(f"Telegram发送器配置无效: {name}", alert_name=name)

    def validate_config(self) -> bool:
        if not self.base_url.startswith(('http://', 'https://')):
            self.logger.error(f"Telegram发送器 {self.name} base_url 无效: {self.base_url}")
            return False
        if self.max_retries < 0 or self.retry_delay < 0:
            self.logger.error(f"Telegram发送器 {self.name} 重试配置不能为负数")
            return False
        return True

    def build_payload(self, message: NotificationMessage) -> Dict[str, Any]:
        """构造 sendMessage 请求体"""
        payload = {
            'chat_id': message.destination,
            'text': message.text,
            'disable_notification': message.silent,
            'protect_content': message.protect_content,
        }
        if message.thread_id is not None:
            payload['message_thread_id'] = message.thread_id
        return payload

    @retry_on_error()
    async def send(self, message: NotificationMessage) -> None:
        token = (message.secret or '').strip()
        chat_id = str(message.destination or '').strip()
        if not token or not chat_id:
            raise AlertConfigError("Telegram 机器人令牌或 chat_id 缺失", alert_name=self.name)

        endpoint = f"{self.base_url}/bot{token}/sendMessage"
        timeout = aiohttp.ClientTimeout(total=self.get_timeout())

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(endpoint, json=self.build_payload(message)) as response:
                    if 200 <= response.status < 300:
                        self.logger.debug(f"Telegram 消息已发送到 {chat_id}")
                        return

                    body = (await response.text())[:200]
                    detail = f"Telegram API 返回状态码 {response.status}: {body}"
                    # 429 和 5xx 可以重试，其余 4xx 说明令牌或 chat_id 有误
                    if response.status == 429 or response.status >= 500:
                        raise AlertSendError(detail, alert_name=self.name)
                    raise AlertConfigError(detail, alert_name=self.name)
        except aiohttp.ClientError as e:
            raise AlertSendError(
                f"Telegram 请求失败: {str(e).replace(token, '***')}",
                alert_name=self.name)
        except asyncio.TimeoutError:
            raise AlertSendError("Telegram 请求超时", alert_name=self.name)
