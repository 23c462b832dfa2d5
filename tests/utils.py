from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING

import yaml

from graphql_multipart.executor import GraphExecutor
from graphql_multipart.params import Upload
from graphql_multipart.transport import Request

if TYPE_CHECKING:
    from collections.abc import Iterable
    from typing import Any, TypedDict

    from graphql_multipart.executor import ExecutionError
    from graphql_multipart.params import OperationParams

    class HttpCase(TypedDict):
        name: str
        test: bytes
        result: Any


curr_dir = os.path.abspath(os.path.dirname(__file__))
http_tests_dir = os.path.join(curr_dir, "test_data", "http")


def load_http_tests() -> list[HttpCase]:
    """Every ``*.http`` body in the test data directory, with the expected
    result from the ``*.yaml`` file of the same name.
    """
    cases: list[HttpCase] = []
    for f in sorted(os.listdir(http_tests_dir)):
        fname, ext = os.path.splitext(f)
        if ext != ".http":
            continue

        with open(os.path.join(http_tests_dir, f), "rb") as fh:
            test_data = fh.read()

        with open(os.path.join(http_tests_dir, fname + ".yaml"), "rb") as fy:
            yaml_data = yaml.safe_load(fy)

        cases.append({"name": fname, "test": test_data, "result": yaml_data})
    return cases


def encode_multipart(
    operations: Any,
    map: Any,
    files: Iterable[tuple[str, str, str, bytes]] = (),
    boundary: str = "boundary",
) -> bytes:
    """Build a multipart upload body.  ``operations`` and ``map`` are dumped as
    JSON unless they are already bytes; ``files`` holds ``(key, filename,
    content_type, data)`` tuples.
    """
    delimiter = b"--" + boundary.encode("latin-1")

    def field(name: str, value: Any) -> bytes:
        if not isinstance(value, bytes):
            value = json.dumps(value).encode("utf-8")
        return (
            delimiter + b"\r\n" + b'Content-Disposition: form-data; name="%s"\r\n\r\n' % name.encode("latin-1") + value
        )

    sections = [field("operations", operations), field("map", map)]
    for key, filename, content_type, data in files:
        sections.append(
            delimiter
            + b"\r\n"
            + b'Content-Disposition: form-data; name="%s"; filename="%s"\r\n'
            % (key.encode("latin-1"), filename.encode("utf-8"))
            + b"Content-Type: %s\r\n\r\n" % content_type.encode("latin-1")
            + data
        )
    return b"\r\n".join(sections) + b"\r\n" + delimiter + b"--\r\n"


class Body:
    """A request body that remembers how it was used."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0
        self.reads = 0
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        assert not self.closed, "read from a closed body"
        self.reads += 1
        if size < 0:
            size = len(self.data) - self.pos
        chunk = self.data[self.pos : self.pos + size]
        self.pos += len(chunk)
        return chunk

    def close(self) -> None:
        self.closed = True


def make_request(
    data: bytes,
    boundary: str | None = "boundary",
    content_length: int | str | None = -1,
    method: str = "POST",
    headers: dict[str, str] | None = None,
) -> Request:
    """A request carrying ``data``.  The Content-Length header is the body's
    real length unless ``content_length`` says otherwise; ``None`` leaves it
    out.
    """
    all_headers = {"Content-Type": "multipart/form-data"}
    if boundary is not None:
        all_headers["Content-Type"] += "; boundary=%s" % boundary
    if content_length == -1:
        content_length = len(data)
    if content_length is not None:
        all_headers["Content-Length"] = str(content_length)
    all_headers.update(headers or {})
    return Request(method, all_headers, Body(data))


def snapshot(value: Any, seen: dict[int, Any] | None = None) -> Any:
    """Copy a variables tree, reading every upload in it into a plain dict.

    An upload bound at several paths is only read once, so every copy of it
    shares the same data.
    """
    if seen is None:
        seen = {}
    if isinstance(value, Upload):
        if id(value) not in seen:
            seen[id(value)] = {
                "filename": value.filename,
                "content_type": value.content_type,
                "data": value.read().decode("utf-8"),
            }
        return seen[id(value)]
    if isinstance(value, dict):
        return {k: snapshot(v, seen) for k, v in value.items()}
    if isinstance(value, list):
        return [snapshot(v, seen) for v in value]
    return value


class RecordingExecutor(GraphExecutor):
    """Executes nothing: the response data is the operation's variables, with
    the uploads read out of them.
    """

    def __init__(self, errors: list[ExecutionError] | None = None) -> None:
        self.errors = errors
        self.params: list[OperationParams] = []
        self.contexts: list[Any] = []

    def create_operation_context(self, ctx: Any, params: OperationParams) -> tuple[Any, list[ExecutionError] | None]:
        self.params.append(params)
        self.contexts.append(ctx)
        if self.errors:
            return None, self.errors
        return snapshot(params.variables), None

    def dispatch_operation(self, ctx: Any, op_ctx: Any) -> tuple[Any, Any]:
        def responses(ctx: Any) -> Any:
            return {"data": {"variables": op_ctx}}

        return responses, ctx
