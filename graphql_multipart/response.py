from __future__ import annotations

import json
from http import HTTPStatus
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from typing import Any

    from .exceptions import UploadError

JSON_CONTENT_TYPE = "application/json"


class Response:
    """A fully rendered response.  The body is always JSON."""

    def __init__(self, status: int = 200, body: bytes = b"") -> None:
        self.status = status
        self.body = body
        self.headers = [("Content-Type", JSON_CONTENT_TYPE), ("Content-Length", str(len(body)))]

    @property
    def status_line(self) -> str:
        try:
            phrase = HTTPStatus(self.status).phrase
        except ValueError:
            phrase = ""
        return f"{self.status} {phrase}".rstrip()

    def json(self) -> Any:
        return json.loads(self.body)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(status={self.status!r}, body={self.body!r})"


def json_response(data: Any, status: int = 200) -> Response:
    return Response(status, json.dumps(data).encode("utf-8"))


def json_error(message: str, status: int = 422) -> Response:
    return json_response({"errors": [{"message": message}]}, status)


def error_response(err: UploadError) -> Response:
    return json_response({"errors": [err.to_dict()]}, err.status)
