import hashlib
import hmac
from logging import Logger

import pytest

from encimg.errors import ConfigError

from .conftest import IMAGE_KEY, IMAGE_SALT
from .signature import (
    SignatureVerifier,
    base64url_decode,
    base64url_encode,
    remove_trailing_slash
)

SIGNED_PATH = '/rs:300:200/enc/2bJ0C5Dh4pIY-xFSqvcw_g/webp'


def reference_hmac(path: str) -> bytes:
  return hmac.new(IMAGE_KEY, IMAGE_SALT + path.encode(), hashlib.sha256).digest()


@pytest.mark.parametrize('size', [1, 8, 16, 31, 32])
def test_truncated_signature_verifies(verifier: SignatureVerifier, size: int) -> None:
  assert verifier.verify(SIGNED_PATH, reference_hmac(SIGNED_PATH)[:size])


@pytest.mark.parametrize(
    'altered', [
        '/rs:300:201/enc/2bJ0C5Dh4pIY-xFSqvcw_g/webp',
        '/rs:300:200/enc/2bJ0C5Dh4pIY-xFSqvcw_h/webp',
        '/rs:300:200/enc/2bJ0C5Dh4pIY-xFSqvcw_g/png',
        '/rs:300:200/enc/2bJ0C5Dh4pIY-xFSqvcw_g',
        'rs:300:200/enc/2bJ0C5Dh4pIY-xFSqvcw_g/webp',
    ])
def test_altered_path_is_rejected(verifier: SignatureVerifier, altered: str) -> None:
  assert not verifier.verify(altered, reference_hmac(SIGNED_PATH)[:16])


def test_trailing_slashes_are_ignored(verifier: SignatureVerifier) -> None:
  signature = verifier.sign('/rs:300:200/enc/token')
  assert verifier.verify('/rs:300:200/enc/token/', signature)
  assert verifier.verify('/rs:300:200/enc/token///', signature)
  assert signature == reference_hmac('/rs:300:200/enc/token')


def test_salt_is_part_of_the_message(logger: Logger) -> None:
  other = SignatureVerifier(logger, IMAGE_KEY, b'another salt')
  assert not other.verify(SIGNED_PATH, reference_hmac(SIGNED_PATH))


@pytest.mark.parametrize('signature', [b'', bytes(33)], ids=['empty', 'too-long'])
def test_signature_size_is_bounded(verifier: SignatureVerifier, signature: bytes) -> None:
  assert not verifier.verify(SIGNED_PATH, signature)


def test_verify_encoded(verifier: SignatureVerifier) -> None:
  encoded = base64url_encode(reference_hmac(SIGNED_PATH)[:10])
  assert verifier.verify_encoded(SIGNED_PATH, encoded)
  assert not verifier.verify_encoded(SIGNED_PATH, 'not*base64')
  assert not verifier.verify_encoded(SIGNED_PATH, 'guyg')


@pytest.mark.parametrize('key,salt', [(b'', IMAGE_SALT), (IMAGE_KEY, b'')], ids=['key', 'salt'])
def test_missing_secret_is_fatal(logger: Logger, key: bytes, salt: bytes) -> None:
  with pytest.raises(ConfigError):
    SignatureVerifier(logger, key, salt)


def test_base64url_decode() -> None:
  assert base64url_decode('-_8') == b'\xfb\xff'
  assert base64url_decode('aGVsbG8') == b'hello'
  assert base64url_decode('aGVsbG8=') == b'hello'
  with pytest.raises(ValueError):
    base64url_decode('a$b')


def test_remove_trailing_slash() -> None:
  assert remove_trailing_slash('/a/b//') == '/a/b'
  assert remove_trailing_slash('/a/b') == '/a/b'
