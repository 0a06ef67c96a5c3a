"""测试探测失败分类"""

import asyncio
import errno
import socket
import ssl

import pytest

from monitoring_engine.checkers.error_kind import (
    classify_exception, classify_error_text, is_dns_error_text, describe_error
)
from monitoring_engine.models.monitoring import ErrorKind
from monitoring_engine.utils.exceptions import TargetBlockedError, InvalidTargetError


class TestClassifyErrorText:
    """测试按错误文本分类"""

    @pytest.mark.parametrize('text, expected', [
        ('', ErrorKind.UNKNOWN),
        (None, ErrorKind.UNKNOWN),
        ('status_500', ErrorKind.HTTP_STATUS),
        ('timeout', ErrorKind.TIMEOUT),
        ('private_blocked', ErrorKind.PRIVATE_BLOCKED),
        ('connection_refused: [Errno 111] Connect call failed', ErrorKind.CONNECTION_REFUSED),
        ('lookup api.example.com: no such host', ErrorKind.DNS),
        ('Temporary failure in name resolution', ErrorKind.DNS),
        ('dial tcp: connection refused', ErrorKind.CONNECTION_REFUSED),
        ('Network is unreachable', ErrorKind.NETWORK_UNREACHABLE),
        ('certificate verify failed', ErrorKind.TLS),
        ('Cannot connect to host example.com:443', ErrorKind.CONNECT),
        ('something odd', ErrorKind.REQUEST_FAILED),
    ])
    def test_classify(self, text, expected):
        assert classify_error_text(text) == expected

    def test_is_dns_error_text(self):
        assert is_dns_error_text('getaddrinfo ENOTFOUND api.example.com')
        assert is_dns_error_text('Name or service not known')
        assert not is_dns_error_text('connection reset')
        assert not is_dns_error_text(None)


class TestClassifyException:
    """测试按异常分类"""

    def test_none_is_ok(self):
        assert classify_exception(None) == ErrorKind.OK

    def test_policy_errors(self):
        assert classify_exception(TargetBlockedError('10.0.0.1')) == ErrorKind.PRIVATE_BLOCKED
        assert classify_exception(InvalidTargetError('bad')) == ErrorKind.INVALID_URL

    def test_timeouts(self):
        assert classify_exception(asyncio.TimeoutError()) == ErrorKind.TIMEOUT
        assert classify_exception(socket.timeout()) == ErrorKind.TIMEOUT

    def test_network_errors(self):
        assert classify_exception(socket.gaierror(-2, 'Name or service not known')) == ErrorKind.DNS
        assert classify_exception(ConnectionRefusedError(errno.ECONNREFUSED, 'refused')) \
            == ErrorKind.CONNECTION_REFUSED
        assert classify_exception(OSError(errno.ENETUNREACH, 'Network is unreachable')) \
            == ErrorKind.NETWORK_UNREACHABLE
        assert classify_exception(ssl.SSLError('bad handshake')) == ErrorKind.TLS

    def test_cause_chain(self):
        """包装异常按原因分类"""
        try:
            try:
                raise socket.gaierror(-2, 'Name or service not known')
            except socket.gaierror as inner:
                raise RuntimeError('request failed') from inner
        except RuntimeError as outer:
            assert classify_exception(outer) == ErrorKind.DNS

    def test_unknown(self):
        assert classify_exception(ValueError('weird')) == ErrorKind.UNKNOWN


class TestDescribeError:
    """测试错误文本生成"""

    def test_describe(self):
        assert describe_error(ErrorKind.TIMEOUT, asyncio.TimeoutError()) == 'timeout'
        assert describe_error(ErrorKind.PRIVATE_BLOCKED, TargetBlockedError('x')) == 'private_blocked'
        assert describe_error(ErrorKind.DNS, OSError('no such host')) == 'dns: no such host'
        assert describe_error(ErrorKind.CONNECT, OSError()) == 'connect'
