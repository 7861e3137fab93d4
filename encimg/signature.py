import base64
import binascii
import hashlib
import hmac
import logging

from encimg.errors import ConfigError

DIGEST_SIZE = hashlib.sha256().digest_size


def base64url_decode(s: str) -> bytes:
  std = s.replace('-', '+').replace('_', '/')
  std += '=' * (-len(std) % 4)
  try:
    return base64.b64decode(std, validate=True)
  except binascii.Error as e:
    raise ValueError(f'invalid base64url: {e}') from e


def base64url_encode(bs: bytes) -> str:
  return base64.urlsafe_b64encode(bs).rstrip(b'=').decode()


def remove_trailing_slash(path: str) -> str:
  return path.rstrip('/')


class SignatureVerifier:
  """Checks truncated HMAC-SHA256 signatures over ``salt || path``."""

  def __init__(self, log: logging.Logger, key: bytes, salt: bytes):
    if not key:
      raise ConfigError('The image key is not set.')
    if not salt:
      raise ConfigError('The image salt is not set.')
    self.log = log
    self.key = key
    self.salt = salt

  def digest(self, path: str) -> bytes:
    path = remove_trailing_slash(path)
    return hmac.new(self.key, self.salt + path.encode(), hashlib.sha256).digest()

  def sign(self, path: str, size: int = DIGEST_SIZE) -> bytes:
    return self.digest(path)[:size]

  def verify(self, path: str, signature: bytes) -> bool:
    # An empty signature would compare equal to an empty prefix.
    if not 0 < len(signature) <= DIGEST_SIZE:
      return False
    return hmac.compare_digest(self.digest(path)[:len(signature)], signature)

  def verify_encoded(self, path: str, signature: str) -> bool:
    try:
      decoded = base64url_decode(signature)
    except ValueError as e:
      self.log.debug({'message': 'undecodable signature', 'reason': str(e)})
      return False
    return self.verify(path, decoded)
