import dataclasses
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Optional
from urllib import parse

import aiofiles
import httpx
from pyvips import Error as VipsError  # type: ignore
from pyvips import Image  # type: ignore

from encimg.errors import SourceUnavailable
from encimg.formats import ImageFormat
from encimg.typing import SourceRef

remote_re = re.compile(r'^https?://')


class OriginKind(Enum):
  LOCAL = 0
  REMOTE = 1


@dataclasses.dataclass(frozen=True)
class FetchedImage:
  buffer: bytes
  detected_format: Optional[ImageFormat]
  origin_kind: OriginKind
  local_path: Optional[Path] = None


def sniff_format(buffer: bytes) -> Optional[ImageFormat]:
  try:
    image = Image.new_from_buffer(buffer, '')
    loader: str = image.get('vips-loader')
  except VipsError:
    return None

  heif_compression = None
  if loader.startswith('heifload') and 'heif-compression' in image.get_fields():
    heif_compression = image.get('heif-compression')

  return ImageFormat.maybe_from_vips_loader(loader, heif_compression)


class ImageFetcher:

  def __init__(
      self,
      log: logging.Logger,
      client: httpx.AsyncClient,
      base_path: Path,
      allow_from_url: bool,
  ):
    self.log = log
    self.client = client
    self.base_path = Path(os.path.abspath(base_path))
    self.allow_from_url = allow_from_url

  def classify(self, source_ref: SourceRef) -> OriginKind:
    if self.allow_from_url and remote_re.match(source_ref):
      return OriginKind.REMOTE
    return OriginKind.LOCAL

  def relative_path(self, source_ref: SourceRef) -> str:
    """Normalizes a local source reference to a POSIX path relative to the base directory.

    Raises SourceUnavailable when the reference escapes the base directory,
    lexically or through a symlink.
    """
    candidate = Path(os.path.normpath(self.base_path / source_ref.lstrip('/')))
    if not candidate.is_relative_to(self.base_path):
      raise SourceUnavailable(f'path escapes base directory: {source_ref}')

    real_base = os.path.realpath(self.base_path)
    if not Path(os.path.realpath(candidate)).is_relative_to(real_base):
      raise SourceUnavailable(f'path escapes base directory: {source_ref}')

    return candidate.relative_to(self.base_path).as_posix()

  def local_path(self, source_ref: SourceRef) -> Path:
    return self.base_path / self.relative_path(source_ref)

  async def fetch(self, source_ref: SourceRef) -> FetchedImage:
    match self.classify(source_ref):
      case OriginKind.REMOTE:
        return await self.fetch_remote(source_ref)
      case OriginKind.LOCAL:
        return await self.fetch_local(source_ref)
      case _:
        raise Exception('system error')

  async def fetch_remote(self, url: SourceRef) -> FetchedImage:
    try:
      res = await self.client.get(url, follow_redirects=True)
      res.raise_for_status()
    except httpx.HTTPError as e:
      raise SourceUnavailable(f'failed to fetch {url}: {e}') from e

    buffer = res.content
    detected = ImageFormat.maybe_from_content_type(res.headers.get('content-type'))
    if detected is None:
      detected = sniff_format(buffer)
    if detected is None:
      detected = ImageFormat.maybe_from_path(parse.urlsplit(url).path)

    self.log.debug({
        'message': 'fetched remote source',
        'size': len(buffer),
        'format': None if detected is None else detected.value,
    })

    return FetchedImage(buffer=buffer, detected_format=detected, origin_kind=OriginKind.REMOTE)

  async def fetch_local(self, source_ref: SourceRef) -> FetchedImage:
    path = self.local_path(source_ref)

    try:
      async with aiofiles.open(path, 'rb') as f:
        buffer: bytes = await f.read()
    except OSError as e:
      raise SourceUnavailable(f'failed to read {path}: {e.strerror}') from e

    detected = ImageFormat.maybe_from_path(path.name)
    if detected is None:
      detected = sniff_format(buffer)

    self.log.debug({
        'message': 'read local source',
        'local_path': str(path),
        'size': len(buffer),
        'format': None if detected is None else detected.value,
    })

    return FetchedImage(
        buffer=buffer, detected_format=detected, origin_kind=OriginKind.LOCAL, local_path=path)
