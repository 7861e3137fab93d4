import dataclasses
import logging
import posixpath
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
import aiofiles.tempfile

from encimg.errors import PersistFailure
from encimg.formats import ImageFormat


@dataclasses.dataclass(eq=True, frozen=True)
class ArtifactPath:
  directory: Path
  path: Path


class ArtifactPathResolver:
  """Mirrors the source tree under the processed root.

  ``{root}/{source dir}/{base name}{suffix}{extension}``, where the extension
  is the source's own when the target format is the source's codec and
  ``.{target}`` otherwise. The layout is an on-disk contract shared with
  artifacts written by earlier runs.
  """

  def __init__(self, processed_root: Path):
    self.processed_root = processed_root

  def resolve(
      self,
      source_path: str,
      target_format: Optional[ImageFormat],
      original_format: Optional[ImageFormat],
      suffix: Optional[str] = None,
  ) -> ArtifactPath:
    relative = source_path[1:] if source_path.startswith('/') else source_path
    source_dir, name = posixpath.split(relative)
    base_name, ext = posixpath.splitext(name)

    if target_format is None or target_format.same_codec(original_format):
      new_ext = ext
    else:
      new_ext = target_format.extension()

    path = self.processed_root / source_dir / f'{base_name}{suffix or ""}{new_ext}'

    return ArtifactPath(directory=path.parent, path=path)


class ArtifactStore:

  def __init__(self, log: logging.Logger, resolver: ArtifactPathResolver):
    self.log = log
    self.resolver = resolver

  async def exists(self, path: Path) -> bool:
    return bool(await aiofiles.os.path.isfile(path))

  async def read(self, path: Path) -> bytes:
    async with aiofiles.open(path, 'rb') as f:
      buffer: bytes = await f.read()
    return buffer

  async def save(self, artifact: ArtifactPath, buffer: bytes) -> None:
    """Writes the whole buffer to a temporary sibling, then renames it into place."""
    try:
      await aiofiles.os.makedirs(artifact.directory, exist_ok=True)

      async with aiofiles.tempfile.NamedTemporaryFile(
          'wb', dir=artifact.directory, prefix='.tmp-', delete=False) as f:
        tmp_path = f.name
        await f.write(buffer)

      try:
        await aiofiles.os.replace(tmp_path, artifact.path)
      except OSError:
        await aiofiles.os.remove(tmp_path)
        raise
    except OSError as e:
      raise PersistFailure(f'Error saving processed image to {artifact.path}: {e}') from e

    self.log.debug({
        'message': 'image saved',
        'path': str(artifact.path),
        'size': len(buffer),
    })
