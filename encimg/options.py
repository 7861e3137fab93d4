import dataclasses
import re
from typing import Optional

from encimg.formats import ImageFormat

RESIZE_TOKEN = 'rs'

dimension_re = re.compile(r'^\s*([+-]?[0-9]+)')


@dataclasses.dataclass(eq=True, frozen=True)
class ProcessingOptions:
  width: Optional[int] = None
  height: Optional[int] = None
  suffix: Optional[str] = None

  @property
  def resize(self) -> bool:
    return self.width is not None or self.height is not None


def parse_dimension(s: str) -> Optional[int]:
  """Reads the leading decimal digits of ``s``, so ``300px`` is 300.

  Zero, negative or digit-less values are unset.
  """
  m = dimension_re.match(s)
  if not m:
    return None

  n = int(m.group(1))
  if n <= 0:
    return None

  return n


def parse_processing_options(segment: str) -> ProcessingOptions:
  width: Optional[int] = None
  height: Optional[int] = None
  suffix: Optional[str] = None

  for option in segment.split('/'):
    parts = option.split(':')
    if parts[0] != RESIZE_TOKEN:
      continue

    match len(parts):
      case 3:
        width = parse_dimension(parts[1])
        height = parse_dimension(parts[2])
      case 4:
        width = parse_dimension(parts[1])
        height = parse_dimension(parts[2])
        suffix = parts[3]
      case _:
        pass

  return ProcessingOptions(width=width, height=height, suffix=suffix)


def format_from_extension(extension: Optional[str]) -> Optional[ImageFormat]:
  """Returns the requested target format, or None when the request leaves it to the source.

  Raises UnsupportedFormat for an extension outside the known formats.
  """
  if not extension:
    return None

  return ImageFormat.parse(extension.lstrip('.').lower())
