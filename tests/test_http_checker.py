"""测试HTTP探测器"""

import asyncio
import ipaddress
import socket
import ssl
from datetime import datetime, timezone

import pytest
from aiohttp import web
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from monitoring_engine.checkers import probe
from monitoring_engine.checkers.http_checker import (
    HttpProber, parse_status_ranges, status_allowed, redirects_allowed_as_status,
    tls_info_from_der
)
from monitoring_engine.models.monitoring import Target, MonitorSettings, ErrorKind


async def start_server(routes, ssl_context=None):
    """在 127.0.0.1 的随机端口启动测试服务，返回 (runner, port)"""
    app = web.Application()
    for path, handler in routes.items():
        app.router.add_route('*', path, handler)
    runner = web.AppRunner(app)
    await runner.setup()

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    await web.SockSite(runner, sock, ssl_context=ssl_context).start()
    return runner, port


def make_target(url, **kwargs):
    return Target(id='api', name='api', kind='http', url=url, **kwargs)


NOT_BEFORE = datetime(2026, 1, 1, tzinfo=timezone.utc)
NOT_AFTER = datetime(2036, 1, 1, tzinfo=timezone.utc)


def make_certificate(subject_cn='localhost', issuer=None):
    """生成自签名证书，返回 (私钥, 证书)"""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_cn)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer or subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOT_BEFORE)
        .not_valid_after(NOT_AFTER)
        .add_extension(x509.SubjectAlternativeName([
            x509.DNSName('localhost'),
            x509.IPAddress(ipaddress.ip_address('127.0.0.1')),
        ]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return key, cert


def server_ssl_context(tmp_path, key, cert):
    cert_file = tmp_path / 'cert.pem'
    key_file = tmp_path / 'key.pem'
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption()))
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(str(cert_file), str(key_file))
    return context


class TestStatusRanges:
    """测试状态码允许列表"""

    def test_parse_literals_and_ranges(self):
        assert parse_status_ranges(['200-299', 301, '404']) == [(200, 299), (301, 301), (404, 404)]

    def test_parse_ignores_invalid_entries(self):
        assert parse_status_ranges(['abc', '', '300-200', 204]) == [(204, 204)]

    def test_empty_list_defaults_to_2xx(self):
        """列表为空时按 200-299 判定"""
        assert status_allowed(200, [])
        assert status_allowed(299, [])
        assert not status_allowed(301, [])
        assert not status_allowed(500, None)

    def test_allowed_literal_and_range(self):
        allowed = ['200-204', 418]
        assert status_allowed(204, allowed)
        assert status_allowed(418, allowed)
        assert not status_allowed(205, allowed)

    def test_redirects_allowed_as_status(self):
        """允许列表覆盖3xx时不跟随重定向"""
        assert not redirects_allowed_as_status([])
        assert redirects_allowed_as_status(['200-399'])
        assert redirects_allowed_as_status([301])
        assert not redirects_allowed_as_status(['200', '404'])


class TestHttpProberConfig:
    """测试HTTP探测器配置验证"""

    def test_validate_config(self):
        settings = MonitorSettings()
        assert HttpProber(make_target('https://api.example.com/health'), settings).validate_config()
        assert not HttpProber(make_target('ftp://example.com'), settings).validate_config()
        assert not HttpProber(make_target('not-a-url'), settings).validate_config()
        assert not HttpProber(make_target(None), settings).validate_config()

    @pytest.mark.asyncio
    async def test_invalid_url_result(self):
        """无效URL返回失败结果而不是抛出异常"""
        result = await HttpProber(make_target('invalid'), MonitorSettings()).check()
        assert result.ok is False
        assert result.error_kind == ErrorKind.INVALID_URL


class TestHttpProberLive:
    """使用本地HTTP服务测试探测流程"""

    def setup_method(self):
        self.settings = MonitorSettings(allow_private_networks=True)

    @pytest.mark.asyncio
    async def test_ok_then_server_error(self):
        """服务先返回200，再返回500"""
        state = {'status': 200}

        async def health(request):
            return web.Response(status=state['status'], text='ok')

        runner, port = await start_server({'/health': health})
        try:
            target = make_target(f'http://127.0.0.1:{port}/health')
            result = await probe(target, self.settings)
            assert result.ok is True
            assert result.status_code == 200
            assert result.error is None
            assert result.latency >= 0

            state['status'] = 500
            result = await probe(target, self.settings)
            assert result.ok is False
            assert result.status_code == 500
            assert result.error == 'status_500'
            assert result.error_kind == ErrorKind.HTTP_STATUS
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_custom_allowed_status(self):
        async def teapot(request):
            return web.Response(status=418)

        runner, port = await start_server({'/tea': teapot})
        try:
            target = make_target(f'http://127.0.0.1:{port}/tea', allowed_status=['418'])
            result = await probe(target, self.settings)
            assert result.ok is True
            assert result.status_code == 418
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_redirect_status_not_followed_when_allowed(self):
        """允许3xx时直接使用重定向状态码"""
        async def moved(request):
            raise web.HTTPFound('/missing')

        runner, port = await start_server({'/old': moved})
        try:
            target = make_target(f'http://127.0.0.1:{port}/old', allowed_status=['200-399'])
            result = await probe(target, self.settings)
            assert result.ok is True
            assert result.status_code == 302

            # 默认允许列表会跟随重定向，落到 404
            result = await probe(make_target(f'http://127.0.0.1:{port}/old'), self.settings)
            assert result.ok is False
            assert result.status_code == 404
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_method_headers_and_body(self):
        received = {}

        async def echo(request):
            received['method'] = request.method
            received['header'] = request.headers.get('X-Check')
            received['body'] = await request.text()
            return web.Response(status=201)

        runner, port = await start_server({'/echo': echo})
        try:
            target = make_target(f'http://127.0.0.1:{port}/echo', method='post',
                                 headers={'X-Check': 'yes'}, request_body='ping',
                                 allowed_status=[201])
            result = await probe(target, self.settings)
            assert result.ok is True
            assert received == {'method': 'POST', 'header': 'yes', 'body': 'ping'}
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(request):
            await asyncio.sleep(2)
            return web.Response(status=200)

        runner, port = await start_server({'/slow': slow})
        try:
            target = make_target(f'http://127.0.0.1:{port}/slow', timeout_seconds=1)
            result = await probe(target, self.settings)
            assert result.ok is False
            assert result.error_kind == ErrorKind.TIMEOUT
            assert result.error == 'timeout'
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(('127.0.0.1', 0))
        port = sock.getsockname()[1]
        sock.close()

        result = await probe(make_target(f'http://127.0.0.1:{port}/'), self.settings)
        assert result.ok is False
        assert result.error_kind in (ErrorKind.CONNECTION_REFUSED, ErrorKind.CONNECT)


class TestHttpProberPrivateNetwork:
    """测试私有网络拦截"""

    @pytest.mark.asyncio
    async def test_loopback_blocked_by_default(self):
        """默认拒绝探测回环地址，且不会发出请求"""
        called = []

        async def health(request):
            called.append(True)
            return web.Response(status=200)

        runner, port = await start_server({'/health': health})
        try:
            target = make_target(f'http://127.0.0.1:{port}/health')
            result = await probe(target, MonitorSettings())
            assert result.ok is False
            assert result.error_kind == ErrorKind.PRIVATE_BLOCKED
            assert result.error == 'private_blocked'
            assert called == []
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_private_literal_blocked(self):
        for url in ('http://10.0.0.1/', 'http://192.168.1.10:8080/', 'http://[::1]/',
                    'http://169.254.169.254/latest/meta-data'):
            result = await probe(make_target(url), MonitorSettings())
            assert result.error_kind == ErrorKind.PRIVATE_BLOCKED, url


class TestProbeDispatch:
    """测试按目标类型分发"""

    @pytest.mark.asyncio
    async def test_unsupported_kind(self):
        target = Target(id='x', name='x', kind='ftp', url='ftp://example.com')
        result = await probe(target, MonitorSettings())
        assert result.ok is False
        assert result.error == 'unsupported_kind: ftp'
        assert result.error_kind == ErrorKind.INVALID_URL


class TestTlsCapture:
    """测试 https 探测时的证书记录"""

    def test_tls_info_from_der(self):
        _, cert = make_certificate()
        info = tls_info_from_der(cert.public_bytes(serialization.Encoding.DER))
        assert info.common_name == 'localhost'
        assert info.issuer == 'localhost'
        assert info.sans == ['localhost']
        assert info.not_before == NOT_BEFORE
        assert info.not_after == NOT_AFTER
        assert info.fingerprint_sha256 == cert.fingerprint(hashes.SHA256()).hex()

    def test_issuer_without_common_name(self):
        issuer = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'Test Org')])
        _, cert = make_certificate(issuer=issuer)
        info = tls_info_from_der(cert.public_bytes(serialization.Encoding.DER))
        assert info.issuer == 'O=Test Org'

    @pytest.mark.asyncio
    async def test_https_probe_records_certificate(self, tmp_path):
        key, cert = make_certificate()

        async def health(request):
            return web.Response(text='ok')

        runner, port = await start_server({'/health': health},
                                          server_ssl_context(tmp_path, key, cert))
        try:
            settings = MonitorSettings(allow_private_networks=True)
            target = make_target(f'https://127.0.0.1:{port}/health', ignore_tls_errors=True)
            result = await HttpProber(target, settings).check()

            assert result.ok, result.error
            assert result.tls is not None
            assert result.tls.common_name == 'localhost'
            assert result.tls.not_after == NOT_AFTER
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_untrusted_certificate_is_tls_error(self, tmp_path):
        key, cert = make_certificate()

        async def health(request):
            return web.Response(text='ok')

        runner, port = await start_server({'/health': health},
                                          server_ssl_context(tmp_path, key, cert))
        try:
            settings = MonitorSettings(allow_private_networks=True)
            result = await HttpProber(make_target(f'https://127.0.0.1:{port}/health'),
                                      settings).check()
            assert result.ok is False
            assert result.error_kind == ErrorKind.TLS
            assert result.tls is None
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_plain_http_has_no_certificate(self):
        async def health(request):
            return web.Response(text='ok')

        runner, port = await start_server({'/health': health})
        try:
            settings = MonitorSettings(allow_private_networks=True)
            result = await HttpProber(make_target(f'http://127.0.0.1:{port}/health'),
                                      settings).check()
            assert result.ok
            assert result.tls is None
        finally:
            await runner.cleanup()
