import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from encimg.errors import AuthenticationFailed, ConfigError
from encimg.signature import base64url_decode, base64url_encode
from encimg.typing import SourceRef

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class SourceUrlCipher:
  """AES-256-GCM tokens laid out as ``nonce(12) || ciphertext || tag(16)``."""

  def __init__(self, key: bytes):
    if len(key) != KEY_SIZE:
      raise ConfigError(f'The source URL encryption key must be {KEY_SIZE} bytes, got {len(key)}.')
    self.aesgcm = AESGCM(key)

  def encrypt(self, source_ref: str, nonce: Optional[bytes] = None) -> bytes:
    if nonce is None:
      nonce = secrets.token_bytes(NONCE_SIZE)
    if len(nonce) != NONCE_SIZE:
      raise ValueError(f'nonce must be {NONCE_SIZE} bytes')
    # AESGCM appends the tag to the ciphertext.
    return nonce + self.aesgcm.encrypt(nonce, source_ref.encode(), None)

  def encrypt_encoded(self, source_ref: str) -> str:
    return base64url_encode(self.encrypt(source_ref))

  def decrypt(self, token: bytes) -> SourceRef:
    if len(token) < NONCE_SIZE + TAG_SIZE:
      raise AuthenticationFailed(f'token too short: {len(token)} bytes')

    nonce = token[:NONCE_SIZE]
    body_and_tag = token[NONCE_SIZE:]

    try:
      plaintext = self.aesgcm.decrypt(nonce, body_and_tag, None)
    except InvalidTag as e:
      raise AuthenticationFailed(
          'The encrypted message or the key may be tampered with.') from e

    try:
      return SourceRef(plaintext.decode())
    except UnicodeDecodeError as e:
      raise AuthenticationFailed('decrypted source is not valid UTF-8') from e

  def decrypt_encoded(self, token: str) -> SourceRef:
    try:
      decoded = base64url_decode(token)
    except ValueError as e:
      raise AuthenticationFailed(str(e)) from e
    return self.decrypt(decoded)
