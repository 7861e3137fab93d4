from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Header
from fastapi.responses import PlainTextResponse, Response

from encimg.config import Settings
from encimg.jsonlog import init_logging
from encimg.pipeline import ImageRequest, ImgServer, ProxyResponse

WELCOME_MESSAGE = 'Welcome to the Sharp API !'


def to_response(res: ProxyResponse) -> Response:
  headers = {}
  if res.etag is not None:
    headers['etag'] = res.etag

  return Response(
      content=res.body, status_code=res.status, media_type=res.content_type, headers=headers)


def create_app(settings: Settings, server: Optional[ImgServer] = None) -> FastAPI:
  client = httpx.AsyncClient(timeout=settings.fetch_timeout)
  if server is None:
    server = ImgServer.from_settings(init_logging(), settings, client)

  @asynccontextmanager
  async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    await client.aclose()

  app = FastAPI(title='encimg', lifespan=lifespan)
  app.state.server = server

  @app.get('/', response_class=PlainTextResponse)
  async def welcome() -> str:
    return WELCOME_MESSAGE

  async def handle(
      signature: str,
      processing_options: str,
      encrypted: str,
      extension: Optional[str],
      accept: str,
      if_none_match: Optional[str],
  ) -> Response:
    res = await server.process(
        ImageRequest(
            signature=signature,
            processing_options=processing_options,
            encrypted=encrypted,
            extension=extension,
            accept_header=accept,
            if_none_match=if_none_match))
    return to_response(res)

  @app.get('/{signature}/{processing_options:path}/enc/{encrypted}/{extension}')
  async def process_image_with_extension(
      signature: str,
      processing_options: str,
      encrypted: str,
      extension: str,
      accept: str = Header(''),
      if_none_match: Optional[str] = Header(None),
  ) -> Response:
    return await handle(
        signature, processing_options, encrypted, extension, accept, if_none_match)

  @app.get('/{signature}/{processing_options:path}/enc/{encrypted}')
  async def process_image(
      signature: str,
      processing_options: str,
      encrypted: str,
      accept: str = Header(''),
      if_none_match: Optional[str] = Header(None),
  ) -> Response:
    return await handle(signature, processing_options, encrypted, None, accept, if_none_match)

  return app
