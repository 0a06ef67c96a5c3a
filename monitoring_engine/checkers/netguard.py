"""私有网络防护

探测前解析目标主机，拒绝回环、链路本地、私有、保留、组播和未指定地址，
防止引擎被用来探测内部基础设施。
"""

import asyncio
import ipaddress
import socket
from typing import List, Optional, Union

from ..utils.exceptions import TargetBlockedError

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# 运营商级 NAT 地址段，ipaddress 不把它算作 private
_SHARED_ADDRESS_SPACE = ipaddress.ip_network('100.64.0.0/10')


def is_blocked_address(address: IPAddress) -> bool:
    """判断地址是否属于被拦截的网段"""
    mapped = getattr(address, 'ipv4_mapped', None)
    if mapped is not None:
        address = mapped
    if (address.is_private or address.is_loopback or address.is_link_local
            or address.is_reserved or address.is_multicast or address.is_unspecified):
        return True
    return address.version == 4 and address in _SHARED_ADDRESS_SPACE


async def resolve_host(host: str, port: Optional[int] = None) -> List[IPAddress]:
    """
    解析主机名为IP地址列表

    Raises:
        socket.gaierror: 域名解析失败
    """
    try:
        return [ipaddress.ip_address(host.strip('[]'))]
    except ValueError:
        pass

    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    addresses = []
    for info in infos:
        # IPv6 地址可能带 %scope 后缀
        raw = info[4][0].split('%', 1)[0]
        address = ipaddress.ip_address(raw)
        if address not in addresses:
            addresses.append(address)
    return addresses


async def guard_host(host: str, allow_private: bool, port: Optional[int] = None) -> None:
    """
    校验目标主机是否允许探测

    Args:
        host: 目标主机名或IP
        allow_private: 是否允许私有网络
        port: 目标端口，仅用于解析

    Raises:
        TargetBlockedError: 主机为空或解析到被拦截的地址
        socket.gaierror: 域名解析失败
    """
    host = (host or '').strip()
    if not host:
        raise TargetBlockedError(host, reason='empty_host')
    if allow_private:
        return

    addresses = await resolve_host(host, port)
    if not addresses:
        raise socket.gaierror(socket.EAI_NONAME, f"no addresses for {host}")
    for address in addresses:
        if is_blocked_address(address):
            raise TargetBlockedError(host, reason='private_blocked')
