#!/usr/bin/env python3
"""
监控引擎演示

在本地启动一个可切换状态的HTTP服务，展示：
1. 目标从正常到不可达再到恢复的状态变化
2. 状态变化通知（打印到控制台代替 Telegram）
3. 自动事件单的创建与关闭
4. 维护窗口对通知的抑制
"""

import asyncio
import socket
import sys
from datetime import timedelta
from pathlib import Path

from aiohttp import web

sys.path.insert(0, str(Path(__file__).parent.parent))

from monitoring_engine.alerts.base import BaseSender
from monitoring_engine.alerts.dispatcher import NotificationDispatcher
from monitoring_engine.models.monitoring import (
    Target, MonitorSettings, MaintenanceWindow, NotificationChannel, EventFilter, utcnow
)
from monitoring_engine.services.engine import Engine
from monitoring_engine.services.incidents import AutoIncidentManager, MemoryIncidentsStore
from monitoring_engine.services.store import MonitoringStore
from monitoring_engine.utils.encryption import Encryptor


class ConsoleSender(BaseSender):
    """把通知打印到控制台"""

    def validate_config(self) -> bool:
        return True

    async def send(self, message) -> None:
        print(f"📨 发送到 {message.destination}:")
        for line in message.text.splitlines():
            print(f"    {line}")


async def demo_engine():
    print("🚀 监控引擎演示")
    print("=" * 50)

    state = {'status': 200}

    async def health(request):
        return web.Response(status=state['status'], text='ok')

    app = web.Application()
    app.router.add_get('/health', health)
    runner = web.AppRunner(app)
    await runner.setup()
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    await web.SockSite(runner, sock).start()

    try:
        encryptor = Encryptor(Encryptor.generate_key())
        store = MonitoringStore()
        store.upsert_target(Target(
            id='demo-api', name='演示接口', kind='http',
            url=f'http://127.0.0.1:{port}/health',
            tags=['demo'], auto_incident=True))
        store.upsert_channel(NotificationChannel(
            name='console', type='console', destination='demo-chat',
            secret_enc=encryptor.encrypt('demo-token')))

        settings = MonitorSettings(allow_private_networks=True, notify_suppress_minutes=0)
        incidents = MemoryIncidentsStore()
        engine = Engine(
            store, settings,
            dispatcher=NotificationDispatcher(store, encryptor,
                                              {'console': ConsoleSender('console')}),
            incident_manager=AutoIncidentManager(incidents))

        now = utcnow()
        print("\n📋 1. 首次检查（正常）")
        print(f"状态: {(await engine.check_now('demo-api', now)).status}")

        print("\n📋 2. 服务返回500")
        state['status'] = 500
        result = await engine.check_now('demo-api', now + timedelta(minutes=1))
        print(f"状态: {result.status}，错误: {result.last_error}")
        print(f"打开的事件单: {[i.reg_no for i in incidents.list_incidents('open')]}")

        print("\n📋 3. 服务恢复")
        state['status'] = 200
        await engine.check_now('demo-api', now + timedelta(minutes=2))
        print(f"已关闭的事件单: {[i.reg_no for i in incidents.list_incidents('closed')]}")

        print("\n📋 4. 维护窗口内的故障不发通知")
        store.create_maintenance(MaintenanceWindow(
            name='演示维护', tags=['demo'],
            starts_at=now + timedelta(minutes=3), ends_at=now + timedelta(minutes=10)))
        state['status'] = 503
        result = await engine.check_now('demo-api', now + timedelta(minutes=4))
        print(f"状态: {result.status}，维护中: {result.maintenance_active}")

        print("\n📋 事件流")
        for event in store.list_events_feed(EventFilter(limit=10)):
            print(f"  {event.timestamp:%H:%M} {event.event_type:<18} {event.message}")

        print(f"\n📊 引擎统计: {engine.get_stats()}")
    finally:
        await runner.cleanup()

    print("\n🎉 演示完成!")


if __name__ == "__main__":
    asyncio.run(demo_engine())
