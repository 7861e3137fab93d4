import asyncio
import dataclasses
import datetime
import logging
import traceback
from contextvars import ContextVar
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import httpx

from encimg.artifact import ArtifactPathResolver, ArtifactStore
from encimg.cache import (
    CacheCoordinator,
    ImageFingerprint,
    MemoryRecordStore,
    cache_key,
    fingerprint_digest,
    generate_etag
)
from encimg.cipher import SourceUrlCipher
from encimg.config import Settings
from encimg.errors import AuthenticationFailed, PersistFailure, SignatureInvalid
from encimg.fetch import FetchedImage, ImageFetcher, OriginKind, sniff_format
from encimg.formats import ImageFormat
from encimg.options import (
    ProcessingOptions,
    format_from_extension,
    parse_processing_options
)
from encimg.signature import SignatureVerifier
from encimg.transform import TransformInvoker, TransformResult, blank_image
from encimg.typing import SourceRef

T = TypeVar('T')

log_context: ContextVar[dict[str, Any]] = ContextVar('log_context', default={})


@dataclasses.dataclass(frozen=True)
class ImageRequest:
  signature: str
  processing_options: str
  encrypted: str
  extension: Optional[str] = None
  accept_header: str = ''
  if_none_match: Optional[str] = None

  @property
  def signed_path(self) -> str:
    return f'/{self.processing_options}/enc/{self.encrypted}/{self.extension or ""}'


@dataclasses.dataclass(frozen=True)
class ProxyResponse:
  status: int
  body: bytes
  content_type: Optional[str]
  reason: str
  etag: Optional[str] = None


class Inflight(Generic[T]):
  """Lets identical concurrent requests await one job instead of repeating it.

  The job runs as its own task, so a cancelled waiter leaves the job and the
  other waiters untouched.
  """

  def __init__(self) -> None:
    self.tasks: dict[str, asyncio.Future[T]] = {}

  def __len__(self) -> int:
    return len(self.tasks)

  async def run(self, key: str, job: Callable[[], Awaitable[T]]) -> T:
    task = self.tasks.get(key)
    if task is None:
      task = asyncio.ensure_future(job())
      self.tasks[key] = task
      task.add_done_callback(lambda t: self.done(key, t))

    return await asyncio.shield(task)

  def done(self, key: str, task: 'asyncio.Future[T]') -> None:
    if self.tasks.get(key) is task:
      del self.tasks[key]
    # Mark retrieved; waiters that are still around get the exception themselves.
    if not task.cancelled():
      task.exception()


class ImgServer:

  def __init__(
      self,
      log: logging.Logger,
      settings: Settings,
      verifier: SignatureVerifier,
      cipher: SourceUrlCipher,
      fetcher: ImageFetcher,
      transformer: TransformInvoker,
      artifacts: ArtifactStore,
      cache: CacheCoordinator,
  ):
    self.log = log
    self.settings = settings
    self.verifier = verifier
    self.cipher = cipher
    self.fetcher = fetcher
    self.transformer = transformer
    self.artifacts = artifacts
    self.cache = cache
    self.inflight: Inflight[TransformResult] = Inflight()
    self.blank = blank_image()

  @classmethod
  def from_settings(
      cls,
      log: logging.Logger,
      settings: Settings,
      client: httpx.AsyncClient,
  ) -> 'ImgServer':
    ttl = None if settings.cache_ttl is None else datetime.timedelta(seconds=settings.cache_ttl)
    artifacts = ArtifactStore(log, ArtifactPathResolver(settings.processed_dir))

    return cls(
        log=log,
        settings=settings,
        verifier=SignatureVerifier(log, settings.image_key, settings.image_salt),
        cipher=SourceUrlCipher(settings.source_url_encryption_key),
        fetcher=ImageFetcher(log, client, settings.base_path, settings.allow_from_url),
        transformer=TransformInvoker(log),
        artifacts=artifacts,
        cache=CacheCoordinator(
            log,
            MemoryRecordStore(ttl),
            artifacts,
            enabled=settings.enable_cache,
            strict=settings.strict_cache,
            check_etag=settings.check_etag))

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **log_context.get(),
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **log_context.get(),
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **log_context.get(),
        **dict,
    })

  def set_log_context(self, req: ImageRequest) -> None:
    log_context.set({'path': req.signed_path, 'accept_header': req.accept_header})

  def authorize(self, req: ImageRequest) -> SourceRef:
    if not self.verifier.verify_encoded(req.signed_path, req.signature):
      raise SignatureInvalid('signature does not match the request path')

    return self.cipher.decrypt_encoded(req.encrypted)

  def target_format(self, req: ImageRequest) -> Optional[ImageFormat]:
    fmt = format_from_extension(req.extension)
    if self.settings.auto_detect_webp and 'image/webp' in req.accept_header:
      fmt = ImageFormat.WEBP
    return fmt

  async def produce(
      self,
      source_ref: SourceRef,
      source_path: Optional[str],
      fetched: Optional[FetchedImage],
      options: ProcessingOptions,
      fingerprint: ImageFingerprint,
  ) -> TransformResult:
    if fetched is None:
      fetched = await self.fetcher.fetch(source_ref)

    result = await self.transformer.run(
        fetched.buffer,
        options.width,
        options.height,
        fingerprint.format or fetched.detected_format)

    if source_path is not None and self.settings.save_image:
      artifact = self.cache.artifact_for(source_path, fingerprint)
      try:
        await self.artifacts.save(artifact, result.buffer)
      except PersistFailure as e:
        self.log_warning('failed to persist', {'reason': str(e)})
      else:
        await self.cache.record_cache(source_ref, fingerprint, fetched.buffer)

    return result

  async def serve(self, req: ImageRequest, source_ref: SourceRef) -> ProxyResponse:
    options = parse_processing_options(req.processing_options)
    fmt = self.target_format(req)

    source_path = None
    if self.fetcher.classify(source_ref) == OriginKind.LOCAL:
      source_path = self.fetcher.relative_path(source_ref)

    fetched = None
    if source_path is not None and self.cache.enabled and self.cache.strict:
      fetched = await self.fetcher.fetch(source_ref)

    fingerprint = ImageFingerprint(
        format=fmt,
        width=options.width,
        height=options.height,
        suffix=options.suffix,
        source_format=None if fetched is None else fetched.detected_format)

    if source_path is not None:
      cached = await self.cache.handle_cache(
          fingerprint,
          source_ref,
          req.if_none_match,
          source_path=source_path,
          source_bytes=None if fetched is None else fetched.buffer)

      if cached.not_modified:
        return ProxyResponse(
            status=HTTPStatus.NOT_MODIFIED,
            body=b'',
            content_type=None,
            reason='not modified',
            etag=cached.etag)

      if cached.cached_path is not None:
        body = cached.buffer
        if body is None:
          try:
            body = await self.artifacts.read(cached.cached_path)
          except OSError as e:
            self.log_debug('cached artifact unreadable', {'reason': str(e)})

        if body is not None:
          # The artifact was encoded in the format chosen when it was produced.
          content_fmt = fmt or sniff_format(body) or ImageFormat.JPEG
          return ProxyResponse(
              status=HTTPStatus.OK,
              body=body,
              content_type=content_fmt.mime,
              reason='cache hit',
              etag=cached.etag)

    def job() -> Awaitable[TransformResult]:
      return self.produce(source_ref, source_path, fetched, options, fingerprint)

    if self.settings.coalesce_requests:
      key = cache_key(source_ref, fingerprint) + ':' + fingerprint_digest(
          source_ref.encode(), fingerprint)
      result = await self.inflight.run(key, job)
    else:
      result = await job()

    etag = None
    if self.settings.check_etag:
      etag = generate_etag(result.buffer, fingerprint.etag_options())

    return ProxyResponse(
        status=HTTPStatus.OK,
        body=result.buffer,
        content_type=result.format.mime,
        reason='processed',
        etag=etag)

  def failure(self, e: Exception) -> ProxyResponse:
    self.log_error('error during process()', {'reason': str(e), 'error': type(e).__name__})

    if self.settings.image_debug:
      detail = ''.join(traceback.format_exception(e))
      return ProxyResponse(
          status=HTTPStatus.INTERNAL_SERVER_ERROR,
          body=f'Error processing the image: {detail}'.encode(),
          content_type='text/plain; charset=utf-8',
          reason='error occurred')

    return ProxyResponse(
        status=HTTPStatus.INTERNAL_SERVER_ERROR,
        body=self.blank,
        content_type=ImageFormat.PNG.mime,
        reason='error occurred')

  async def process(self, req: ImageRequest) -> ProxyResponse:
    self.set_log_context(req)

    try:
      source_ref = self.authorize(req)
    except SignatureInvalid as e:
      self.log_warning('invalid signature', {'reason': str(e)})
      return ProxyResponse(
          status=HTTPStatus.FORBIDDEN,
          body=b'Invalid signature',
          content_type='text/plain; charset=utf-8',
          reason='invalid signature')
    except AuthenticationFailed as e:
      self.log_error('source token authentication failed', {'reason': str(e), 'tampered': True})
      return ProxyResponse(
          status=HTTPStatus.UNAUTHORIZED,
          body=b'Authentication failed',
          content_type='text/plain; charset=utf-8',
          reason='authentication failed')

    try:
      res = await self.serve(req, source_ref)
    except Exception as e:
      return self.failure(e)

    self.log_debug('responded', {
        'status': int(res.status),
        'reason': res.reason,
        'content_type': res.content_type,
        'img_size': len(res.body),
    })

    return res
