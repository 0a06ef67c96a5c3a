"""探测失败分类

把探测过程中出现的异常或已保存的错误文本归类为 ErrorKind，
供指标、事件和统计使用。
"""

import asyncio
import errno
import socket
import ssl
from typing import Optional

import aiohttp

from ..models.monitoring import ErrorKind
from ..utils.exceptions import TargetBlockedError, InvalidTargetError

_DNS_MARKERS = (
    'no such host',
    'temporary failure in name resolution',
    'server misbehaving',
    'nxdomain',
    'servfail',
    'enotfound',
    'name or service not known',
    'nodename nor servname provided',
)

_UNREACHABLE_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH}


def is_dns_error_text(text: Optional[str]) -> bool:
    """判断错误文本是否为域名解析失败"""
    msg = (text or '').strip().lower()
    if not msg:
        return False
    return any(marker in msg for marker in _DNS_MARKERS)


def classify_error_text(text: Optional[str]) -> ErrorKind:
    """
    根据已保存的错误文本推断分类

    Args:
        text: CheckResult.error 文本，例如 'status_500' 或 'timeout'

    Returns:
        ErrorKind: 分类结果
    """
    msg = (text or '').strip().lower()
    if not msg:
        return ErrorKind.UNKNOWN
    if msg.startswith('status_'):
        return ErrorKind.HTTP_STATUS

    head = msg.split(':', 1)[0].strip()
    for kind in ErrorKind:
        if head == kind.value:
            return kind

    if is_dns_error_text(msg):
        return ErrorKind.DNS
    if 'connection refused' in msg:
        return ErrorKind.CONNECTION_REFUSED
    if 'network is unreachable' in msg or 'no route to host' in msg:
        return ErrorKind.NETWORK_UNREACHABLE
    if 'ssl' in msg or 'tls' in msg or 'certificate' in msg:
        return ErrorKind.TLS
    if 'connect call failed' in msg or 'cannot connect to host' in msg:
        return ErrorKind.CONNECT
    return ErrorKind.REQUEST_FAILED


def classify_exception(exc: Optional[BaseException]) -> ErrorKind:
    """
    把探测异常归类

    Args:
        exc: 探测中抛出的异常，None 表示成功

    Returns:
        ErrorKind: 分类结果
    """
    if exc is None:
        return ErrorKind.OK
    if isinstance(exc, TargetBlockedError):
        return ErrorKind.PRIVATE_BLOCKED
    if isinstance(exc, (InvalidTargetError, aiohttp.InvalidURL)):
        return ErrorKind.INVALID_URL
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, socket.timeout)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (aiohttp.ClientSSLError, ssl.SSLError, ssl.CertificateError)):
        return ErrorKind.TLS
    if isinstance(exc, socket.gaierror):
        return ErrorKind.DNS
    if isinstance(exc, ConnectionRefusedError):
        return ErrorKind.CONNECTION_REFUSED
    if isinstance(exc, OSError) and exc.errno in _UNREACHABLE_ERRNOS:
        return ErrorKind.NETWORK_UNREACHABLE

    if isinstance(exc, aiohttp.ClientConnectorError):
        inner = getattr(exc, 'os_error', None)
        if inner is not None and inner is not exc:
            kind = classify_exception(inner)
            if kind not in (ErrorKind.REQUEST_FAILED, ErrorKind.UNKNOWN):
                return kind
        return ErrorKind.CONNECT

    cause = exc.__cause__
    if cause is not None and cause is not exc:
        kind = classify_exception(cause)
        if kind not in (ErrorKind.REQUEST_FAILED, ErrorKind.UNKNOWN):
            return kind

    kind = classify_error_text(str(exc))
    if kind in (ErrorKind.UNKNOWN, ErrorKind.HTTP_STATUS):
        kind = ErrorKind.REQUEST_FAILED
    if kind == ErrorKind.REQUEST_FAILED and not isinstance(exc, (aiohttp.ClientError, OSError)):
        return ErrorKind.UNKNOWN
    return kind


def describe_error(kind: ErrorKind, exc: Optional[BaseException] = None) -> str:
    """生成写入 CheckResult.error 的可读错误文本"""
    if kind in (ErrorKind.TIMEOUT, ErrorKind.PRIVATE_BLOCKED) or exc is None:
        return kind.value
    detail = str(exc).strip()
    if not detail:
        return kind.value
    return f"{kind.value}: {detail}"
