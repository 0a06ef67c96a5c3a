"""TCP 探测器"""

import asyncio

from .base import BaseProber
from .factory import register_checker
from .netguard import guard_host
from ..models.monitoring import CheckResult


@register_checker('tcp')
class TcpProber(BaseProber):
    """TCP 探测器：连接建立即视为成功，随后立即关闭"""

    def validate_config(self) -> bool:
        host = (self.target.host or '').strip()
        port = self.target.port
        return bool(host) and isinstance(port, int) and 0 < port <= 65535

    async def _probe(self, timeout: float) -> CheckResult:
        host = self.target.host.strip()
        port = self.target.port

        await guard_host(host, self.settings.allow_private_networks, port)

        _, writer = await asyncio.open_connection(host, port)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            # 对端可能在握手后立即重置连接，连接已经建立过
            self.logger.debug(f"关闭连接时出错: {e}")

        return CheckResult(ok=True, latency=0.0)
