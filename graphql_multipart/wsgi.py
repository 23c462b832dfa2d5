from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .response import json_error
from .transport import MultipartForm, Request

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterable
    from typing import Any

    from .executor import GraphExecutor
    from .multipart import SupportsRead

    StartResponse = Callable[..., Any]

logger = logging.getLogger(__name__)

TRANSPORT_NOT_SUPPORTED = "transport not supported"


class WSGIInput:
    """``wsgi.input`` as a request body.

    Never reads past ``CONTENT_LENGTH`` when the server gave one.  The server
    owns the underlying stream, so closing this only stops further reads.
    """

    def __init__(self, stream: SupportsRead, length: int | None = None) -> None:
        self._stream = stream
        self._remaining = length
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            return b""
        if self._remaining is not None:
            if size < 0 or size > self._remaining:
                size = self._remaining
            if size == 0:
                return b""
        data = self._stream.read(size)
        if self._remaining is not None:
            self._remaining -= len(data)
        return data

    def close(self) -> None:
        self.closed = True


def request_from_environ(environ: dict[str, Any]) -> Request:
    headers: list[tuple[str, str]] = []
    for key, value in environ.items():
        if key.startswith("HTTP_"):
            name = key[5:]
        elif key in ("CONTENT_TYPE", "CONTENT_LENGTH"):
            # CGI leaves these out of HTTP_*, and may set them to "".
            if not value:
                continue
            name = key
        else:
            continue
        headers.append((name.replace("_", "-").title(), value))

    request = Request(environ.get("REQUEST_METHOD", "GET"), headers, None, context=environ)  # type: ignore[arg-type]
    request.body = WSGIInput(environ["wsgi.input"], request.content_length)
    return request


class UploadApp:
    """A WSGI application serving GraphQL multipart uploads with
    ``executor``.  Requests the transport does not support are answered with
    400.
    """

    def __init__(self, executor: GraphExecutor, transport: MultipartForm | None = None) -> None:
        self.executor = executor
        self.transport = transport if transport is not None else MultipartForm()

    def __call__(self, environ: dict[str, Any], start_response: StartResponse) -> Iterable[bytes]:
        request = request_from_environ(environ)
        if self.transport.supports(request):
            response = self.transport.do(request, self.executor)
        else:
            logger.warning("No transport for %r", request)
            response = json_error(TRANSPORT_NOT_SUPPORTED, 400)

        start_response(response.status_line, response.headers)
        return [response.body]
