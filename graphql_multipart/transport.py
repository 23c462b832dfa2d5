from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from wsgiref.headers import Headers

from .decoder import UploadDecoder, now
from .exceptions import MalformedEnvelopeError, SizeExceededError, UploadError
from .multipart import REQUEST_TOO_LARGE, BodyLimitReader, MultipartReader, parse_media_type
from .response import error_response, json_response

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterable, Mapping
    from typing import Any, TypedDict

    from .executor import GraphExecutor
    from .multipart import SupportsRead
    from .params import OperationParams, Upload
    from .response import Response

    class TransportConfig(TypedDict):
        MAX_UPLOAD_SIZE: int
        MAX_MEMORY_FILE_SIZE: int
        UPLOAD_DIR: str | bytes | None
        UPLOAD_KEEP_EXTENSIONS: bool
        SPOOL_UPLOADS: bool
        CHUNK_SIZE: int


DEFAULT_MAX_UPLOAD_SIZE = 32 << 20

MULTIPART_FAILED = "failed to parse multipart form"


class Request:
    """The parts of an HTTP request the transport looks at.

    :param method: the request method.

    :param headers: the request headers, either a :class:`wsgiref.headers.Headers`
                    or anything that can be turned into one.

    :param body: the request body.  Needs ``read(n)``; ``close()`` is called
                 when the request is done if it has one.

    :param context: passed through untouched to the executor.
    """

    def __init__(
        self,
        method: str,
        headers: Headers | Mapping[str, str] | Iterable[tuple[str, str]],
        body: SupportsRead,
        context: Any = None,
    ) -> None:
        self.method = method.upper()
        if not isinstance(headers, Headers):
            items = headers.items() if hasattr(headers, "items") else headers
            headers = Headers(list(items))  # type: ignore[union-attr]
        self.headers = headers
        self.body = body
        self.context = context

    @property
    def content_length(self) -> int | None:
        """The declared Content-Length, or None if it is missing or invalid."""
        value = self.headers.get("Content-Length")
        if value is None:
            return None
        try:
            length = int(value)
        except ValueError:
            return None
        if length < 0:
            return None
        return length

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(method={self.method!r}, content_type={self.headers.get('Content-Type')!r})"


class MultipartForm:
    """The GraphQL multipart request transport.

    Accepts a ``POST`` whose ``multipart/form-data`` body holds an
    ``operations`` section, a ``map`` section and then the files, binds the
    files into the operation's variables and runs the operation.

    ============================ =========================================
    Config Key                   Description
    ============================ =========================================
    MAX_UPLOAD_SIZE              The largest body accepted, in bytes.  0
                                 means 32 MiB.
    MAX_MEMORY_FILE_SIZE         How much of a spooled upload is kept in
                                 memory before it moves to a temporary file.
    UPLOAD_DIR                   Where temporary files are created.  If
                                 None, the system default is used.
    UPLOAD_KEEP_EXTENSIONS       Whether temporary files keep the extension
                                 of the uploaded filename.
    SPOOL_UPLOADS                Whether each upload is copied out of the
                                 body before the next section is read.  If
                                 False, an upload can only be read from the
                                 ``on_upload`` callback.
    CHUNK_SIZE                   How many bytes are read from the body at a
                                 time.
    ============================ =========================================

    :param max_upload_size: shortcut for the ``MAX_UPLOAD_SIZE`` config key.

    :param config: configuration overrides, see above.

    :param on_upload: called with each bound upload before the next section
                      is read.
    """

    DEFAULT_CONFIG: TransportConfig = {
        "MAX_UPLOAD_SIZE": DEFAULT_MAX_UPLOAD_SIZE,
        "MAX_MEMORY_FILE_SIZE": 1 * 1024 * 1024,
        "UPLOAD_DIR": None,
        "UPLOAD_KEEP_EXTENSIONS": False,
        "SPOOL_UPLOADS": True,
        "CHUNK_SIZE": 64 * 1024,
    }

    def __init__(
        self,
        max_upload_size: int = 0,
        config: dict[Any, Any] = {},
        on_upload: Callable[[Upload], None] | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.config: TransportConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)  # type: ignore[typeddict-item]
        if max_upload_size:
            self.config["MAX_UPLOAD_SIZE"] = max_upload_size
        self.on_upload = on_upload

    @property
    def max_upload_size(self) -> int:
        return self.config["MAX_UPLOAD_SIZE"] or DEFAULT_MAX_UPLOAD_SIZE

    def supports(self, request: Request) -> bool:
        """Whether ``request`` is a multipart upload this transport can
        handle.  Never raises.
        """
        if request.headers.get("Upgrade"):
            return False

        try:
            media_type, _ = parse_media_type(request.headers.get("Content-Type"))
        except ValueError:
            return False

        return request.method == "POST" and media_type == "multipart/form-data"

    def do(self, request: Request, executor: GraphExecutor) -> Response:
        """Decode ``request``, run it with ``executor`` and return the one
        response for it.  The request body is closed before returning.
        """
        start = now()
        body = BodyLimitReader(request.body, self.max_upload_size)
        decoder: UploadDecoder | None = None
        try:
            content_length = request.content_length
            if content_length is not None and content_length > self.max_upload_size:
                self.logger.warning(
                    "Declared Content-Length %d is over the limit of %d bytes", content_length, self.max_upload_size
                )
                return error_response(SizeExceededError(REQUEST_TOO_LARGE))

            try:
                media_type, options = parse_media_type(request.headers.get("Content-Type"))
                if media_type != "multipart/form-data":
                    raise ValueError("not a multipart/form-data body: %r" % media_type)
                reader = MultipartReader(body, options.get("boundary", ""), chunk_size=self.config["CHUNK_SIZE"])
            except ValueError as err:
                self.logger.warning("%s: %s", MULTIPART_FAILED, err)
                return error_response(MalformedEnvelopeError(MULTIPART_FAILED))

            decoder = UploadDecoder(reader, content_length, self.config, self.on_upload)
            try:
                params = decoder.decode(request.headers, start)
            except UploadError as err:
                return error_response(err)

            return self._execute(request, executor, params)
        finally:
            if decoder is not None:
                decoder.close()
            body.close()

    def _execute(self, request: Request, executor: GraphExecutor, params: OperationParams) -> Response:
        op_ctx, errors = executor.create_operation_context(request.context, params)
        if errors:
            self.logger.debug("Operation rejected by the executor: %r", errors)
            resp = executor.dispatch_error(request.context, errors)
            return json_response(resp, executor.status_for(errors))

        responses, ctx = executor.dispatch_operation(request.context, op_ctx)
        return json_response(responses(ctx))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(max_upload_size={self.max_upload_size!r})"
