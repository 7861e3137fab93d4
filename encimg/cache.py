import dataclasses
import datetime
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

from dateutil import tz

from encimg.artifact import ArtifactPath, ArtifactStore
from encimg.formats import ImageFormat
from encimg.typing import CacheKey, EtagOptions, FingerprintDict, SourceRef


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), sort_keys=True)


@dataclasses.dataclass(eq=True, frozen=True)
class ImageFingerprint:
  format: Optional[ImageFormat] = None
  width: Optional[int] = None
  height: Optional[int] = None
  suffix: Optional[str] = None
  source_format: Optional[ImageFormat] = None

  def to_dict(self) -> FingerprintDict:
    d: FingerprintDict = {}
    if self.format is not None:
      d['format'] = self.format.value
    if self.width is not None:
      d['width'] = self.width
    if self.height is not None:
      d['height'] = self.height
    if self.suffix is not None:
      d['suffix'] = self.suffix
    if self.source_format is not None:
      d['sourceFormat'] = self.source_format.value
    return d

  def etag_options(self) -> EtagOptions:
    d: EtagOptions = {}
    if self.width is not None:
      d['width'] = self.width
    if self.height is not None:
      d['height'] = self.height
    if self.suffix is not None:
      d['suffix'] = self.suffix
    return d


def cache_key(source_ref: SourceRef, fingerprint: ImageFingerprint) -> CacheKey:
  if fingerprint.format is None:
    return CacheKey(source_ref)
  return CacheKey(f'{source_ref}.{fingerprint.format.value}')


def fingerprint_digest(material: bytes, fingerprint: ImageFingerprint) -> str:
  return hashlib.md5(material + json_dump(fingerprint.to_dict()).encode()).hexdigest()


def generate_etag(buffer: bytes, options: EtagOptions) -> str:
  digest = hashlib.md5(buffer + json_dump(options).encode()).hexdigest()
  return f'"{digest}"'


def etag_matches(client_etag: Optional[str], etag: str) -> bool:
  """Weak comparison as done for If-None-Match."""
  if not client_etag:
    return False

  def opaque(tag: str) -> str:
    tag = tag.strip()
    if tag.startswith('W/'):
      tag = tag[2:]
    return tag.strip('"')

  if client_etag.strip() == '*':
    return True

  want = opaque(etag)
  return any(opaque(t) == want for t in client_etag.split(','))


class RecordStore(Protocol):

  async def get(self, key: CacheKey) -> Optional[str]:
    ...

  async def set(self, key: CacheKey, value: str) -> None:
    ...

  async def clear(self) -> None:
    ...


class MemoryRecordStore:

  def __init__(self, ttl: Optional[datetime.timedelta] = None):
    self.ttl = ttl
    self.records: dict[CacheKey, tuple[str, Optional[datetime.datetime]]] = {}

  async def get(self, key: CacheKey) -> Optional[str]:
    record = self.records.get(key)
    if record is None:
      return None

    value, expires = record
    if expires is not None and expires <= get_now():
      del self.records[key]
      return None

    return value

  async def set(self, key: CacheKey, value: str) -> None:
    expires = None if self.ttl is None else get_now() + self.ttl
    self.records[key] = (value, expires)

  async def clear(self) -> None:
    self.records.clear()


@dataclasses.dataclass(frozen=True)
class CacheResult:
  cached_path: Optional[Path] = None
  etag: Optional[str] = None
  not_modified: bool = False
  buffer: Optional[bytes] = None


NO_CACHE = CacheResult()


class CacheCoordinator:
  """Decides whether a persisted artifact may answer a request.

  A hit needs both a registry record equal to the digest of the current
  fingerprint and the artifact file on storage. In strict mode the digest is
  taken over the source bytes instead of the source reference.
  """

  def __init__(
      self,
      log: logging.Logger,
      store: RecordStore,
      artifacts: ArtifactStore,
      enabled: bool,
      strict: bool,
      check_etag: bool,
  ):
    self.log = log
    self.store = store
    self.artifacts = artifacts
    self.enabled = enabled
    self.strict = strict
    self.check_etag = check_etag

  def digest(
      self,
      source_ref: SourceRef,
      fingerprint: ImageFingerprint,
      source_bytes: Optional[bytes],
  ) -> str:
    if self.strict:
      if source_bytes is None:
        raise ValueError('strict cache requires source bytes')
      return fingerprint_digest(source_bytes, fingerprint)

    return fingerprint_digest(source_ref.encode(), fingerprint)

  def artifact_for(self, source_path: str, fingerprint: ImageFingerprint) -> ArtifactPath:
    return self.artifacts.resolver.resolve(
        source_path,
        fingerprint.format,
        ImageFormat.maybe_from_path(source_path),
        fingerprint.suffix)

  async def handle_cache(
      self,
      fingerprint: ImageFingerprint,
      source_ref: SourceRef,
      client_etag: Optional[str] = None,
      *,
      source_path: Optional[str] = None,
      source_bytes: Optional[bytes] = None,
  ) -> CacheResult:
    if not self.enabled:
      return NO_CACHE

    key = cache_key(source_ref, fingerprint)
    digest = self.digest(source_ref, fingerprint, source_bytes)
    valid_cache = await self.store.get(key) == digest

    artifact = self.artifact_for(source_ref if source_path is None else source_path, fingerprint)
    exists = await self.artifacts.exists(artifact.path)

    if not (valid_cache and exists):
      self.log.debug({
          'message': 'cache miss',
          'cache_key': key,
          'valid_cache': valid_cache,
          'exists': exists,
      })
      return NO_CACHE

    if not self.check_etag:
      self.log.debug({'message': 'cache hit', 'cache_key': key, 'path': str(artifact.path)})
      return CacheResult(cached_path=artifact.path)

    try:
      buffer = await self.artifacts.read(artifact.path)
    except OSError as e:
      # Removed or unreadable since the existence check.
      self.log.debug({'message': 'cache miss', 'cache_key': key, 'reason': str(e)})
      return NO_CACHE

    etag = generate_etag(buffer, fingerprint.etag_options())
    not_modified = etag_matches(client_etag, etag)

    self.log.debug({
        'message': 'cache hit',
        'cache_key': key,
        'path': str(artifact.path),
        'not_modified': not_modified,
    })

    return CacheResult(
        cached_path=artifact.path, etag=etag, not_modified=not_modified, buffer=buffer)

  async def record_cache(
      self,
      source_ref: SourceRef,
      fingerprint: ImageFingerprint,
      source_bytes: Optional[bytes] = None,
  ) -> None:
    if not self.enabled:
      return

    key = cache_key(source_ref, fingerprint)
    await self.store.set(key, self.digest(source_ref, fingerprint, source_bytes))
    self.log.debug({'message': 'cache recorded', 'cache_key': key})

  async def flush(self) -> None:
    await self.store.clear()
    self.log.debug({'message': 'cache flushed'})
