"""测试通知渠道密钥加解密"""

import pytest

from monitoring_engine.utils.encryption import Encryptor
from monitoring_engine.utils.exceptions import EncryptionError, ErrorCode


class TestEncryptor:
    """测试Encryptor类"""

    def setup_method(self):
        self.encryptor = Encryptor(Encryptor.generate_key())

    def test_ciphertext_hides_plaintext(self):
        blob = self.encryptor.encrypt('123456:SECRET')
        assert isinstance(blob, bytes)
        assert b'SECRET' not in blob
        assert self.encryptor.decrypt(blob) == b'123456:SECRET'

    def test_decrypt_accepts_str(self):
        blob = self.encryptor.encrypt(b'token').decode('ascii')
        assert self.encryptor.decrypt(blob) == b'token'

    def test_each_encryption_differs(self):
        assert self.encryptor.encrypt('token') != self.encryptor.encrypt('token')

    def test_invalid_key(self):
        with pytest.raises(EncryptionError, match="加密密钥格式无效"):
            Encryptor('short')

    def test_empty_ciphertext(self):
        with pytest.raises(EncryptionError, match="密文为空"):
            self.encryptor.decrypt(b'')

    def test_wrong_key(self):
        """密钥不匹配时抛出不可恢复的异常"""
        blob = Encryptor(Encryptor.generate_key()).encrypt('token')
        with pytest.raises(EncryptionError, match="密文无法解密") as exc_info:
            self.encryptor.decrypt(blob)
        assert exc_info.value.error_code == ErrorCode.ENCRYPTION_ERROR
        assert exc_info.value.recoverable is False

    def test_key_whitespace_stripped(self):
        key = Encryptor.generate_key()
        blob = Encryptor(key).encrypt('token')
        assert Encryptor(f"  {key}\n").decrypt(blob) == b'token'
