import binascii
import dataclasses
from pathlib import Path
from typing import Mapping, Optional, Self

from encimg.errors import ConfigError

DEFAULT_BASE_PATH = '/app/images'
DEFAULT_PROCESSED_DIR = '/app/processed'
DEFAULT_FETCH_TIMEOUT = 10.0
ENCRYPTION_KEY_SIZE = 32


def get_env_bytes(environ: Mapping[str, str], key: str) -> bytes:
  value = environ.get(key, '')
  if value == '':
    raise ConfigError(f'Environment variable {key} is not set.')
  try:
    return bytes.fromhex(value)
  except (ValueError, binascii.Error) as e:
    raise ConfigError(f'Environment variable {key} is not valid hex: {e}') from e


def get_env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
  if key not in environ:
    return default
  return environ[key].lower() == 'true'


def get_env_number(environ: Mapping[str, str], key: str, default: Optional[float]) -> Optional[float]:
  value = environ.get(key, '')
  if value == '':
    return default
  try:
    return float(value)
  except ValueError as e:
    raise ConfigError(f'Environment variable {key} is not a number: {value}') from e


@dataclasses.dataclass(eq=True, frozen=True)
class Settings:
  source_url_encryption_key: bytes
  image_key: bytes
  image_salt: bytes
  allow_from_url: bool = False
  base_path: Path = Path(DEFAULT_BASE_PATH)
  processed_dir: Path = Path(DEFAULT_PROCESSED_DIR)
  save_image: bool = False
  enable_cache: bool = True
  strict_cache: bool = False
  check_etag: bool = True
  auto_detect_webp: bool = False
  image_debug: bool = False
  cache_ttl: Optional[float] = None
  fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
  coalesce_requests: bool = True

  @classmethod
  def from_env(cls, environ: Mapping[str, str]) -> Self:
    fetch_timeout = get_env_number(environ, 'FETCH_TIMEOUT', DEFAULT_FETCH_TIMEOUT)
    assert fetch_timeout is not None

    encryption_key = get_env_bytes(environ, 'SOURCE_URL_ENCRYPTION_KEY')
    if len(encryption_key) != ENCRYPTION_KEY_SIZE:
      raise ConfigError(
          f'SOURCE_URL_ENCRYPTION_KEY must be {ENCRYPTION_KEY_SIZE} bytes, got {len(encryption_key)}.')

    return cls(
        source_url_encryption_key=encryption_key,
        image_key=get_env_bytes(environ, 'IMAGE_KEY'),
        image_salt=get_env_bytes(environ, 'IMAGE_SALT'),
        allow_from_url=get_env_bool(environ, 'ALLOW_FROM_URL', False),
        base_path=Path(environ.get('BASE_PATH') or DEFAULT_BASE_PATH),
        processed_dir=Path(environ.get('PROCESSED_DIR') or DEFAULT_PROCESSED_DIR),
        save_image=get_env_bool(environ, 'SAVE_IMAGE', False),
        enable_cache=get_env_bool(environ, 'ENABLE_CACHE', True),
        strict_cache=get_env_bool(environ, 'STRICT_CACHE', False),
        check_etag=get_env_bool(environ, 'CHECK_ETAG', True),
        auto_detect_webp=get_env_bool(environ, 'AUTO_DETECT_WEBP', False),
        image_debug=get_env_bool(environ, 'IMAGE_DEBUG', False),
        cache_ttl=get_env_number(environ, 'CACHE_TTL', None),
        fetch_timeout=fetch_timeout,
        coalesce_requests=get_env_bool(environ, 'COALESCE_REQUESTS', True))
