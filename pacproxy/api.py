from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import Response

from .state import ConfigStore

LOGGER = logging.getLogger("PacProxy.API")

PAC_MEDIA_TYPE = "application/x-ns-proxy-autoconfig"
_PAC_METHODS = ["GET", "HEAD"]
_ANY_METHOD = [
    "GET",
    "HEAD",
    "POST",
    "PUT",
    "PATCH",
    "DELETE",
    "OPTIONS",
    "TRACE",
    "CONNECT",
]


def create_app(store: ConfigStore) -> FastAPI:
    app = FastAPI(
        title="PAC Proxy Supervisor",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    # Any path with the /pac prefix serves the file; query strings are cache
    # busters and are ignored.
    @app.api_route("/pac{suffix:path}", methods=_PAC_METHODS)
    async def pac(suffix: str, request: Request) -> Response:
        data = store.snapshot()
        LOGGER.debug("Serving %s bytes of PAC data for %s", len(data), request.url.path)
        return Response(content=data, media_type=PAC_MEDIA_TYPE)

    @app.api_route("/{path:path}", methods=_ANY_METHOD, include_in_schema=False)
    async def not_found(path: str) -> Response:
        return Response(status_code=404)

    return app
