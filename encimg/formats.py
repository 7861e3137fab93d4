import os
from enum import Enum
from typing import Optional

from encimg.errors import UnsupportedFormat

# Loaders reported by libvips in the "vips-loader" field.
LOADER_MAP = {
    'jpegload': 'jpeg',
    'jpegload_buffer': 'jpeg',
    'jpegload_source': 'jpeg',
    'pngload': 'png',
    'pngload_buffer': 'png',
    'pngload_source': 'png',
    'webpload': 'webp',
    'webpload_buffer': 'webp',
    'webpload_source': 'webp',
    'gifload': 'gif',
    'gifload_buffer': 'gif',
    'gifload_source': 'gif',
    'heifload': 'heif',
    'heifload_buffer': 'heif',
    'heifload_source': 'heif',
}


class ImageFormat(Enum):
  WEBP = 'webp'
  AVIF = 'avif'
  PNG = 'png'
  JPEG = 'jpeg'
  JPG = 'jpg'
  GIF = 'gif'
  BMP = 'bmp'
  HEIF = 'heif'
  HEIC = 'heic'

  @classmethod
  def maybe_from_str(cls, s: Optional[str]) -> Optional['ImageFormat']:
    if not s:
      return None
    try:
      return cls(s.strip().lower())
    except ValueError:
      return None

  @classmethod
  def parse(cls, s: str) -> 'ImageFormat':
    fmt = cls.maybe_from_str(s)
    if fmt is None:
      raise UnsupportedFormat(f'unsupported image format: {s}')
    return fmt

  @classmethod
  def maybe_from_path(cls, path: str) -> Optional['ImageFormat']:
    _, ext = os.path.splitext(path)
    return cls.maybe_from_str(ext[1:])

  @classmethod
  def maybe_from_content_type(cls, content_type: Optional[str]) -> Optional['ImageFormat']:
    if not content_type:
      return None
    mime = content_type.split(';', 1)[0].strip()
    if '/' not in mime:
      return None
    return cls.maybe_from_str(mime.split('/', 1)[1])

  @classmethod
  def maybe_from_vips_loader(
      cls,
      loader: str,
      heif_compression: Optional[str] = None,
  ) -> Optional['ImageFormat']:
    name = LOADER_MAP.get(loader)
    if name is None:
      return None
    if name == 'heif' and heif_compression == 'av1':
      return cls.AVIF
    return cls(name)

  def canonical(self) -> 'ImageFormat':
    if self == ImageFormat.JPG:
      return ImageFormat.JPEG
    if self == ImageFormat.HEIC:
      return ImageFormat.HEIF
    return self

  def same_codec(self, other: Optional['ImageFormat']) -> bool:
    return other is not None and self.canonical() == other.canonical()

  @property
  def mime(self) -> str:
    return f'image/{self.canonical().value}'

  @property
  def animated(self) -> bool:
    return self in ANIMATED_FORMATS

  def extension(self) -> str:
    return f'.{self.value}'


ANIMATED_FORMATS = frozenset([
    ImageFormat.GIF,
    ImageFormat.WEBP,
    ImageFormat.AVIF,
    ImageFormat.HEIF,
    ImageFormat.HEIC,
])
