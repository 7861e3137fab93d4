import dataclasses
import logging
from logging import Logger
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import httpx
import pytest
from pyvips import Image  # type: ignore

from encimg.cipher import SourceUrlCipher
from encimg.config import Settings
from encimg.jsonlog import MyJsonFormatter
from encimg.pipeline import ImageRequest, ImgServer
from encimg.signature import SignatureVerifier, base64url_encode

ENCRYPTION_KEY = bytes(range(32))
IMAGE_KEY = bytes.fromhex('943b421c9eb07c830af81030552c86009268de4e532ba2ee2eab8247c6da0881')
IMAGE_SALT = bytes.fromhex('520f986b998545b4785e0defbc4f3c1203f22de2374a3d53cb7a7fe9fea309c5')

PNG_NAME = 'a/b/image.png'


def make_png(width: int, height: int) -> bytes:
  return Image.black(width, height, bands=3).pngsave_buffer()


def image_size(buffer: bytes) -> tuple[int, int]:
  image = Image.new_from_buffer(buffer, '')
  return (image.get('width'), image.get('height'))


def image_loader(buffer: bytes) -> str:
  return Image.new_from_buffer(buffer, '').get('vips-loader')


@pytest.fixture
def anyio_backend() -> str:
  return 'asyncio'


@pytest.fixture
def logger(tmp_path: Path) -> Generator[Logger, None, None]:
  log = logging.getLogger(f'encimg.test.{tmp_path.name}')
  log.setLevel(logging.DEBUG)
  log.propagate = False

  log_file = open(tmp_path / 'test.log', 'w')
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(log_file)
  log.addHandler(log_handler)

  yield log

  log.removeHandler(log_handler)
  log_file.close()


@pytest.fixture
def base_path(tmp_path: Path) -> Path:
  path = tmp_path / 'images'
  path.mkdir()
  return path


@pytest.fixture
def processed_dir(tmp_path: Path) -> Path:
  return tmp_path / 'processed'


@pytest.fixture
def put_source(base_path: Path) -> Callable[[str, bytes], Path]:

  def fn(name: str, buffer: bytes) -> Path:
    path = base_path / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(buffer)
    return path

  return fn


@pytest.fixture
def settings(base_path: Path, processed_dir: Path) -> Settings:
  return Settings(
      source_url_encryption_key=ENCRYPTION_KEY,
      image_key=IMAGE_KEY,
      image_salt=IMAGE_SALT,
      base_path=base_path,
      processed_dir=processed_dir,
      save_image=True)


@pytest.fixture
def remote_sources() -> dict[str, tuple[int, bytes, Optional[str]]]:
  return {}


@pytest.fixture
def remote_calls() -> list[str]:
  return []


@pytest.fixture
def transport(
    remote_sources: dict[str, tuple[int, bytes, Optional[str]]],
    remote_calls: list[str],
) -> httpx.MockTransport:

  def handler(request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    remote_calls.append(url)
    if url not in remote_sources:
      return httpx.Response(404, text='not found')
    status, body, content_type = remote_sources[url]
    headers = {} if content_type is None else {'content-type': content_type}
    return httpx.Response(status, content=body, headers=headers)

  return httpx.MockTransport(handler)


@pytest.fixture
def client(transport: httpx.MockTransport) -> httpx.AsyncClient:
  return httpx.AsyncClient(transport=transport)


@pytest.fixture
def make_server(
    logger: Logger,
    settings: Settings,
    client: httpx.AsyncClient,
) -> Callable[..., ImgServer]:

  def fn(**overrides: Any) -> ImgServer:
    return ImgServer.from_settings(
        logger, dataclasses.replace(settings, **overrides), client)

  return fn


@pytest.fixture
def verifier(logger: Logger) -> SignatureVerifier:
  return SignatureVerifier(logger, IMAGE_KEY, IMAGE_SALT)


@pytest.fixture
def cipher() -> SourceUrlCipher:
  return SourceUrlCipher(ENCRYPTION_KEY)


@pytest.fixture
def make_request(
    verifier: SignatureVerifier,
    cipher: SourceUrlCipher,
) -> Callable[..., ImageRequest]:

  def fn(
      source: str,
      options: str = 'rs:200:0',
      extension: Optional[str] = None,
      accept_header: str = '',
      if_none_match: Optional[str] = None,
  ) -> ImageRequest:
    req = ImageRequest(
        signature='',
        processing_options=options,
        encrypted=cipher.encrypt_encoded(source),
        extension=extension,
        accept_header=accept_header,
        if_none_match=if_none_match)
    signature = base64url_encode(verifier.sign(req.signed_path, 16))
    return dataclasses.replace(req, signature=signature)

  return fn
