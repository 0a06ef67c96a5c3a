"""测试Telegram通知发送器"""

import socket

import pytest
from aiohttp import web

from monitoring_engine.alerts.telegram_sender import TelegramSender
from monitoring_engine.models.monitoring import NotificationMessage
from monitoring_engine.utils.exceptions import AlertConfigError, AlertSendError

TOKEN = '123456:ABC-secret_token'


class FakeTelegramApi:
    """本地模拟 Bot API，按顺序返回预设状态码"""

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.requests = []
        self.runner = None
        self.port = None

    async def handle(self, request):
        self.requests.append((request.match_info['token'], await request.json()))
        status = self.statuses.pop(0) if self.statuses else 200
        return web.json_response({'ok': status == 200}, status=status)

    async def start(self):
        app = web.Application()
        app.router.add_post('/bot{token}/sendMessage', self.handle)
        self.runner = web.AppRunner(app)
        await self.runner.setup()
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(('127.0.0.1', 0))
        self.port = sock.getsockname()[1]
        await web.SockSite(self.runner, sock).start()
        return f'http://127.0.0.1:{self.port}'

    async def stop(self):
        await self.runner.cleanup()


def make_message(**kwargs):
    kwargs.setdefault('secret', TOKEN)
    return NotificationMessage(destination='-100123', text='hello', **kwargs)


class TestTelegramSenderConfig:
    """测试配置与请求体"""

    def test_defaults(self):
        sender = TelegramSender()
        assert sender.name == 'telegram'
        assert sender.sender_type == 'telegram'
        assert sender.base_url == 'https://api.telegram.org'
        assert sender.get_timeout() == 10

    def test_invalid_config(self):
        with pytest.raises(AlertConfigError):
            TelegramSender('bad', {'base_url': 'ftp://example.com'})
        with pytest.raises(AlertConfigError):
            TelegramSender('bad', {'max_retries': -1})

    def test_build_payload(self):
        sender = TelegramSender()
        payload = sender.build_payload(make_message(silent=True, protect_content=True,
                                                    thread_id=42))
        assert payload == {
            'chat_id': '-100123',
            'text': 'hello',
            'disable_notification': True,
            'protect_content': True,
            'message_thread_id': 42,
        }
        assert 'message_thread_id' not in sender.build_payload(make_message())

    @pytest.mark.asyncio
    async def test_missing_token(self):
        with pytest.raises(AlertConfigError):
            await TelegramSender().send(make_message(secret=None))


class TestTelegramSenderDelivery:
    """使用本地模拟接口测试发送"""

    @pytest.mark.asyncio
    async def test_send_success(self):
        api = FakeTelegramApi([200])
        base_url = await api.start()
        try:
            sender = TelegramSender('tg', {'base_url': base_url})
            await sender.send(make_message(thread_id=7))
            token, body = api.requests[0]
            assert token == TOKEN
            assert body['chat_id'] == '-100123'
            assert body['message_thread_id'] == 7
        finally:
            await api.stop()

    @pytest.mark.asyncio
    async def test_retry_on_rate_limit(self):
        """429 会按重试次数重发"""
        api = FakeTelegramApi([429, 200])
        base_url = await api.start()
        try:
            sender = TelegramSender('tg', {'base_url': base_url, 'retry_delay': 0})
            await sender.send(make_message())
            assert len(api.requests) == 2
        finally:
            await api.stop()

    @pytest.mark.asyncio
    async def test_server_error_exhausts_retries(self):
        api = FakeTelegramApi([500, 502, 503])
        base_url = await api.start()
        try:
            sender = TelegramSender('tg', {'base_url': base_url, 'retry_delay': 0,
                                           'max_retries': 2})
            with pytest.raises(AlertSendError):
                await sender.send(make_message())
            assert len(api.requests) == 3
        finally:
            await api.stop()

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """400 表示配置错误，不重试"""
        api = FakeTelegramApi([400])
        base_url = await api.start()
        try:
            sender = TelegramSender('tg', {'base_url': base_url, 'retry_delay': 0})
            with pytest.raises(AlertConfigError, match='400'):
                await sender.send(make_message())
            assert len(api.requests) == 1
        finally:
            await api.stop()

    @pytest.mark.asyncio
    async def test_connection_error_masks_token(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(('127.0.0.1', 0))
        port = sock.getsockname()[1]
        sock.close()

        sender = TelegramSender('tg', {'base_url': f'http://127.0.0.1:{port}',
                                       'max_retries': 0})
        with pytest.raises(AlertSendError) as exc_info:
            await sender.send(make_message())
        assert TOKEN not in str(exc_info.value)
