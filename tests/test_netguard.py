"""测试私有网络防护"""

import ipaddress
from unittest.mock import patch, AsyncMock

import pytest

from monitoring_engine.checkers.netguard import is_blocked_address, resolve_host, guard_host
from monitoring_engine.utils.exceptions import TargetBlockedError


class TestIsBlockedAddress:
    """测试地址分类"""

    @pytest.mark.parametrize('address', [
        '127.0.0.1', '10.1.2.3', '172.16.0.1', '192.168.1.1', '169.254.169.254',
        '0.0.0.0', '224.0.0.1', '100.64.0.1', '240.0.0.1',
        '::1', 'fe80::1', 'fc00::1', '::', 'ff02::1', '::ffff:127.0.0.1',
    ])
    def test_blocked(self, address):
        assert is_blocked_address(ipaddress.ip_address(address))

    @pytest.mark.parametrize('address', ['8.8.8.8', '1.1.1.1', '2606:4700:4700::1111'])
    def test_public(self, address):
        assert not is_blocked_address(ipaddress.ip_address(address))


class TestGuardHost:
    """测试主机校验"""

    @pytest.mark.asyncio
    async def test_ip_literal_not_resolved(self):
        """IP字面量直接返回，不做DNS解析"""
        assert await resolve_host('8.8.8.8') == [ipaddress.ip_address('8.8.8.8')]
        assert await resolve_host('[::1]') == [ipaddress.ip_address('::1')]

    @pytest.mark.asyncio
    async def test_empty_host(self):
        with pytest.raises(TargetBlockedError) as exc_info:
            await guard_host('  ', allow_private=True)
        assert exc_info.value.reason == 'empty_host'

    @pytest.mark.asyncio
    async def test_allow_private_skips_resolution(self):
        with patch('monitoring_engine.checkers.netguard.resolve_host',
                   new=AsyncMock()) as mock_resolve:
            await guard_host('10.0.0.1', allow_private=True)
        mock_resolve.assert_not_called()

    @pytest.mark.asyncio
    async def test_public_host_allowed(self):
        await guard_host('8.8.8.8', allow_private=False)

    @pytest.mark.asyncio
    async def test_hostname_resolving_to_private_is_blocked(self):
        """任一解析结果落在私有网段即拒绝"""
        addresses = [ipaddress.ip_address('93.184.216.34'), ipaddress.ip_address('10.0.0.5')]
        with patch('monitoring_engine.checkers.netguard.resolve_host',
                   new=AsyncMock(return_value=addresses)):
            with pytest.raises(TargetBlockedError) as exc_info:
                await guard_host('internal.example.com', allow_private=False, port=443)
        assert exc_info.value.host == 'internal.example.com'
        assert exc_info.value.reason == 'private_blocked'
