"""通知模块"""

from .base import BaseSender
from .dispatcher import NotificationDispatcher, build_message, can_send, repeat_down_due
from .telegram_sender import TelegramSender

__all__ = ['BaseSender', 'NotificationDispatcher', 'TelegramSender',
           'build_message', 'can_send', 'repeat_down_due']
