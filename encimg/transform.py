import asyncio
import dataclasses
import logging
import math
import time
from typing import Optional

from pyvips import Error as VipsError  # type: ignore
from pyvips import Image  # type: ignore

from encimg.errors import PipelineFailure, UnsupportedFormat
from encimg.formats import ImageFormat

TRANSPARENT = [255.0, 255.0, 255.0, 0.0]


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


@dataclasses.dataclass(frozen=True)
class TransformResult:
  buffer: bytes
  format: ImageFormat
  original_format: Optional[ImageFormat]
  size: Size


def round_half_up(x: float) -> int:
  return math.floor(x + 0.5)


def resolve_dimensions(natural: Size, width: Optional[int], height: Optional[int]) -> Size:
  """Output dimensions never exceed the natural ones on either axis."""
  if width and height is None:
    height = round_half_up(natural.height * (width / natural.width))
  elif height and width is None:
    width = round_half_up(natural.width * (height / natural.height))
  elif width and height:
    width = min(width, natural.width)
    height = min(height, natural.height)

  width = width if width and width < natural.width else natural.width
  height = height if height and height < natural.height else natural.height

  return Size(width, height)


def detect_format(image: Image) -> Optional[ImageFormat]:
  fields = image.get_fields()
  if 'vips-loader' not in fields:
    return None
  heif_compression = image.get('heif-compression') if 'heif-compression' in fields else None
  return ImageFormat.maybe_from_vips_loader(image.get('vips-loader'), heif_compression)


def n_pages(image: Image) -> int:
  if 'n-pages' not in image.get_fields():
    return 1
  return int(image.get('n-pages'))


def blank_image() -> bytes:
  """A 1x1 fully transparent PNG."""
  image = Image.black(1, 1).new_from_image(TRANSPARENT).cast('uchar')
  return image.copy(interpretation='srgb').pngsave_buffer()


class TransformInvoker:

  def __init__(self, log: logging.Logger):
    self.log = log

  async def run(
      self,
      buffer: bytes,
      width: Optional[int] = None,
      height: Optional[int] = None,
      target_format: Optional[ImageFormat] = None,
  ) -> TransformResult:
    return await asyncio.to_thread(self.transform, buffer, width, height, target_format)

  def transform(
      self,
      buffer: bytes,
      width: Optional[int] = None,
      height: Optional[int] = None,
      target_format: Optional[ImageFormat] = None,
  ) -> TransformResult:
    start_ns = time.time_ns()

    try:
      image: Image = Image.new_from_buffer(buffer, '')
    except VipsError as e:
      raise PipelineFailure(f'cannot decode source image: {e}') from e

    original_format = detect_format(image)
    fmt = original_format if target_format is None else target_format
    if fmt is None:
      raise UnsupportedFormat('cannot determine the output format of the source image')

    animated = fmt.animated and n_pages(image) > 1

    try:
      if animated:
        image = Image.new_from_buffer(buffer, '', n=-1)
        natural = Size(image.get('width'), image.get('page-height'))
      else:
        natural = Size.from_image(image)

      size = resolve_dimensions(natural, width, height)
      if size != natural:
        image = self.resize(buffer, image, natural, size, animated)

      out = self.encode(image, fmt)
    except VipsError as e:
      raise PipelineFailure(f'failed to transform image: {e}') from e

    self.log.debug({
        'message': 'transformed',
        'natural': dataclasses.asdict(natural),
        'resized': dataclasses.asdict(size),
        'format': fmt.value,
        'original_format': None if original_format is None else original_format.value,
        'animated': animated,
        'vips_us': (time.time_ns() - start_ns) // 1000,
        'img_size': len(out),
    })

    return TransformResult(buffer=out, format=fmt, original_format=original_format, size=size)

  def resize(self, buffer: bytes, image: Image, natural: Size, size: Size, animated: bool) -> Image:
    if animated:
      # thumbnail keeps page-height consistent across frames.
      return Image.thumbnail_buffer(
          buffer, size.width, height=size.height, size='force', no_rotate=True, option_string='n=-1')

    return image.resize(size.width / natural.width, vscale=size.height / natural.height)

  def encode(self, image: Image, fmt: ImageFormat) -> bytes:
    match fmt:
      case ImageFormat.WEBP:
        return image.webpsave_buffer()
      case ImageFormat.AVIF:
        return image.heifsave_buffer(compression='av1')
      case ImageFormat.PNG:
        return image.pngsave_buffer()
      case ImageFormat.JPEG | ImageFormat.JPG:
        return image.jpegsave_buffer()
      case ImageFormat.GIF:
        return image.gifsave_buffer()
      case ImageFormat.HEIF | ImageFormat.HEIC:
        return image.heifsave_buffer(compression='hevc')
      case _:
        raise UnsupportedFormat(f'Unsupported image format: {fmt.value}')
