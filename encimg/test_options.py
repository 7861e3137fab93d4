from typing import Optional

import pytest

from encimg.errors import UnsupportedFormat
from encimg.formats import ImageFormat

from .options import (
    ProcessingOptions,
    format_from_extension,
    parse_dimension,
    parse_processing_options
)


@pytest.mark.parametrize(
    'segment,expected', [
        ('rs:300:200', ProcessingOptions(width=300, height=200)),
        ('rs:0:200', ProcessingOptions(height=200)),
        ('rs:300:0', ProcessingOptions(width=300)),
        ('rs:300:200:thumb', ProcessingOptions(width=300, height=200, suffix='thumb')),
        ('rs:0:0:_sm', ProcessingOptions(suffix='_sm')),
        ('other:1:2', ProcessingOptions()),
        ('rs:abc:200', ProcessingOptions(height=200)),
        ('rs:-5:200', ProcessingOptions(height=200)),
        ('rs:300', ProcessingOptions()),
        ('rs:1:2:3:4', ProcessingOptions()),
        ('', ProcessingOptions()),
        ('q:80/rs:300:200', ProcessingOptions(width=300, height=200)),
        ('rs:300:200:thumb/rs:50:60', ProcessingOptions(width=50, height=60, suffix='thumb')),
        ('rs:300:200/rs:0:60', ProcessingOptions(height=60)),
    ])
def test_parse_processing_options(segment: str, expected: ProcessingOptions) -> None:
  assert parse_processing_options(segment) == expected


def test_resize_flag() -> None:
  assert not ProcessingOptions().resize
  assert not ProcessingOptions(suffix='x').resize
  assert ProcessingOptions(width=1).resize
  assert ProcessingOptions(height=1).resize


@pytest.mark.parametrize(
    's,expected', [
        ('12', 12),
        ('0', None),
        ('-1', None),
        ('', None),
        ('1.5', 1),
        ('300px', 300),
        (' 42', 42),
        ('+7', 7),
        ('007', 7),
        ('1_000', 1),
        ('\u0661\u0662', None),
        ('px300', None),
    ])
def test_parse_dimension(s: str, expected: Optional[int]) -> None:
  assert parse_dimension(s) == expected


@pytest.mark.parametrize(
    'extension,expected', [
        (None, None),
        ('', None),
        ('webp', ImageFormat.WEBP),
        ('WEBP', ImageFormat.WEBP),
        ('.png', ImageFormat.PNG),
        ('jpg', ImageFormat.JPG),
        ('Heic', ImageFormat.HEIC),
    ])
def test_format_from_extension(extension: Optional[str], expected: Optional[ImageFormat]) -> None:
  assert format_from_extension(extension) == expected


@pytest.mark.parametrize('extension', ['tiff', 'svg', 'exe'])
def test_unknown_extension_is_rejected(extension: str) -> None:
  with pytest.raises(UnsupportedFormat):
    format_from_extension(extension)
