"""通知调度器

决定一条通知是否真正发出（按目标节流、仍不可达提醒），
在每次发送前解密渠道凭据，并隔离单个渠道的失败。
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .base import BaseSender
from ..models.monitoring import (
    Target, CheckResult, MonitorSettings, NotificationChannel, NotificationMessage,
    ensure_utc, STATUS_DOWN, STATUS_UP
)
from ..utils.encryption import Encryptor
from ..utils.exceptions import AlertConfigError
from ..utils.log_manager import get_logger

KIND_DOWN = STATUS_DOWN
KIND_UP = STATUS_UP

MESSAGE_TITLES = {
    KIND_DOWN: "🚨 监控目标不可达",
    KIND_UP: "✅ 监控目标已恢复",
}
REPEAT_DOWN_LINE = "⏰ 目标仍不可达（重复提醒）"
TEST_MESSAGE = "🔔 测试通知：监控告警渠道配置正常"
FOOTER = "来自监控告警引擎"


def format_notify_time(value: datetime) -> str:
    return ensure_utc(value).strftime('%Y-%m-%d %H:%M UTC')


def can_send(last_notified_at: Optional[datetime], now: datetime,
             settings: MonitorSettings) -> bool:
    """
    按目标节流：距上次通知不足 notify_suppress_minutes 时不发送

    节流对不可达和恢复通知一视同仁；suppress 为0表示不节流。
    """
    suppress = max(settings.notify_suppress_minutes or 0, 0)
    if suppress == 0 or last_notified_at is None:
        return True
    return ensure_utc(now) - ensure_utc(last_notified_at) >= timedelta(minutes=suppress)


def repeat_down_due(last_notified_at: Optional[datetime], now: datetime,
                    settings: MonitorSettings) -> bool:
    """持续不可达时，距上次通知超过 notify_repeat_down_minutes 即需要再提醒一次"""
    repeat = settings.notify_repeat_down_minutes or 0
    if repeat <= 0:
        return False
    if last_notified_at is None:
        return True
    return ensure_utc(now) - ensure_utc(last_notified_at) >= timedelta(minutes=repeat)


def build_message(kind: str, target: Target, result: Optional[CheckResult],
                  now: datetime, repeat_down: bool = False) -> str:
    """
    生成固定格式的通知文本

    Args:
        kind: 'down' 或 'up'
        target: 监控目标
        result: 本次探测结果
        now: 检查时间
        repeat_down: 是否为仍不可达提醒

    Returns:
        str: 通知文本
    """
    lines = [MESSAGE_TITLES.get(kind, MESSAGE_TITLES[KIND_DOWN])]
    if repeat_down and kind == KIND_DOWN:
        lines.append(REPEAT_DOWN_LINE)
    lines.append((target.name or '').strip())
    lines.append(target.address)
    if result is not None:
        if kind == KIND_DOWN and result.error:
            lines.append(f"错误: {result.error}")
        if result.latency > 0:
            lines.append(f"延迟: {int(result.latency * 1000)} ms")
    lines.append(f"时间: {format_notify_time(now)}")
    lines.append("")
    lines.append(FOOTER)
    return "\n".join(lines)


class NotificationDispatcher:
    """通知调度器，只依赖 BaseSender 接口"""

    def __init__(self, store, encryptor: Optional[Encryptor],
                 senders: Optional[Dict[str, BaseSender]] = None):
        """
        初始化通知调度器

        Args:
            store: 提供 list_channels 的存储对象
            encryptor: 解密渠道凭据的加密器
            senders: 渠道类型到发送器的映射，例如 {'telegram': TelegramSender()}
        """
        self.store = store
        self.encryptor = encryptor
        self.logger = get_logger('dispatcher')
        self.senders: Dict[str, BaseSender] = {}
        self._stats = {'sent': 0, 'failed': 0, 'suppressed': 0}
        for channel_type, sender in (senders or {}).items():
            self.register_sender(channel_type, sender)

    def register_sender(self, channel_type: str, sender: BaseSender) -> None:
        if not isinstance(sender, BaseSender):
            raise AlertConfigError(f"发送器必须继承自BaseSender: {type(sender)}")
        self.senders[channel_type] = sender
        self.logger.info(f"已注册发送器: {channel_type} ({sender.name})")

    def resolve_channels(self) -> List[NotificationChannel]:
        """
        获取本次通知的渠道

        存在默认渠道时只使用默认渠道，否则使用全部启用的渠道。
        """
        channels = self.store.list_channels(active_only=True)
        defaults = [c for c in channels if c.is_default]
        return defaults or channels

    async def notify(self, kind: str, target: Target, result: Optional[CheckResult],
                     last_notified_at: Optional[datetime], now: datetime,
                     settings: MonitorSettings, repeat_down: bool = False) -> bool:
        """
        在节流允许时发送通知

        Returns:
            bool: 至少一个渠道发送成功时为True；被节流或全部失败时为False
        """
        if not can_send(last_notified_at, now, settings):
            self._stats['suppressed'] += 1
            self.logger.debug(f"目标 {target.name} 的 {kind} 通知被节流")
            return False

        text = build_message(kind, target, result, now, repeat_down)
        sent = await self.dispatch(text)
        if sent:
            self.logger.info(f"目标 {target.name} 的 {kind} 通知已发送")
        else:
            self.logger.warning(f"目标 {target.name} 的 {kind} 通知未能送达任何渠道")
        return sent

    async def dispatch(self, text: str,
                       channels: Optional[List[NotificationChannel]] = None) -> bool:
        """
        把通知发到所有渠道，单个渠道失败不影响其他渠道

        Returns:
            bool: 是否至少有一个渠道发送成功
        """
        if channels is None:
            channels = self.resolve_channels()
        if not channels:
            self.logger.warning("没有启用的通知渠道，跳过通知发送")
            return False

        results = await asyncio.gather(
            *(self._send_to_channel(channel, text) for channel in channels))
        return any(results)

    async def _send_to_channel(self, channel: NotificationChannel, text: str) -> bool:
        try:
            await self._deliver(channel, text)
            self._stats['sent'] += 1
            return True
        except Exception as e:
            self._stats['failed'] += 1
            self.logger.error(f"通知渠道 {channel.name} 发送失败: {e}")
            return False

    async def _deliver(self, channel: NotificationChannel, text: str) -> None:
        sender = self.senders.get(channel.type)
        if sender is None:
            raise AlertConfigError(f"不支持的通知渠道类型: {channel.type}",
                                   alert_name=channel.name)
        if self.encryptor is None:
            raise AlertConfigError("未配置加密密钥，无法解密渠道凭据",
                                   alert_name=channel.name)

        message = NotificationMessage(
            destination=channel.destination,
            text=text,
            silent=channel.silent,
            protect_content=channel.protect_content,
            thread_id=channel.thread_id,
            secret=self.encryptor.decrypt(channel.secret_enc).decode('utf-8')
        )
        try:
            await sender.send(message)
        finally:
            message.secret = None

    async def test_channel(self, channel: NotificationChannel) -> None:
        """
        向单个渠道发送测试通知，失败时抛出异常

        Raises:
            AlertError: 发送失败
            EncryptionError: 凭据无法解密
        """
        await self._deliver(channel, TEST_MESSAGE)
        self.logger.info(f"通知渠道 {channel.name} 测试通知已发送")

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)
