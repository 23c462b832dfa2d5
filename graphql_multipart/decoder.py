from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import IntEnum
from typing import TYPE_CHECKING

from .exceptions import (
    DecodeError,
    FileError,
    MalformedEnvelopeError,
    SizeExceededError,
    StreamError,
    UploadBindingError,
    UploadError,
)
from .params import OPERATIONS_DECODE_FAILED, OperationParams, TraceTiming, Upload

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable
    from typing import Any, TypedDict

    from .multipart import MultipartReader, Part

    class DecoderConfig(TypedDict, total=False):
        SPOOL_UPLOADS: bool
        UPLOAD_DIR: str | bytes | None
        UPLOAD_KEEP_EXTENSIONS: bool
        MAX_MEMORY_FILE_SIZE: int


OPERATIONS_FIRST = "first part must be operations"
MAP_SECOND = "second part must be map"
MAP_DECODE_FAILED = "map form field could not be decoded"
PART_FAILED = "failed to parse part"


def now() -> datetime:
    return datetime.now(timezone.utc)


class DecoderState(IntEnum):
    """States of :class:`UploadDecoder`.

    The sections of a request must arrive as ``operations``, then ``map``,
    then zero or more files.  ``DONE`` and ``FAILED`` are terminal.
    """

    EXPECT_OPERATIONS = 0
    EXPECT_MAP = 1
    EXPECT_FILES_OR_END = 2
    DONE = 3
    FAILED = 4


class PathMap:
    """The decoded ``map`` section: which variables each file key fills.

    Every key has to be claimed by exactly one file section.  Claimed keys
    are tracked separately from the paths so that a repeated key and an
    unknown key are reported the same way.
    """

    def __init__(self, paths: dict[str, list[str]]) -> None:
        self._paths = paths
        self._pending = dict.fromkeys(paths)

    @classmethod
    def from_json(cls, data: Any) -> PathMap:
        if not isinstance(data, dict):
            raise DecodeError(MAP_DECODE_FAILED)
        for key, paths in data.items():
            if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
                raise DecodeError(MAP_DECODE_FAILED)
        return cls(data)

    def claim(self, key: str) -> list[str]:
        """Mark ``key`` as satisfied and return its paths."""
        paths = self._paths.get(key) if key in self._pending else None
        if not paths:
            raise UploadBindingError("invalid empty operations paths list for key %s" % (key,), key)
        del self._pending[key]
        return list(paths)

    def unclaimed(self) -> list[str]:
        """Keys no file section has claimed yet, in map order."""
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(pending={self.unclaimed()!r})"


class UploadDecoder:
    """Reads the sections of one multipart upload request, in order, and
    builds the :class:`~graphql_multipart.params.OperationParams` for it.

    :param reader: reader over the request body.

    :param content_length: the request's declared Content-Length, used as the
                           size hint of every upload.

    :param config: spooling options, see
                   :attr:`~graphql_multipart.transport.MultipartForm.DEFAULT_CONFIG`.

    :param on_upload: called with every :class:`Upload` once it is bound and
                      before the next section is read.  This is the only
                      time the upload can be streamed straight from the body.
    """

    def __init__(
        self,
        reader: MultipartReader,
        content_length: int | None = None,
        config: DecoderConfig = {},
        on_upload: Callable[[Upload], None] | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.reader = reader
        self.content_length = content_length
        self.config = config
        self.on_upload = on_upload

        self.state = DecoderState.EXPECT_OPERATIONS
        self.params: OperationParams | None = None
        self.path_map: PathMap | None = None
        self.uploads: list[Upload] = []

    def decode(self, headers: Any = None, start: datetime | None = None) -> OperationParams:
        """Run the decoder to the end.  Raises an
        :class:`~graphql_multipart.exceptions.UploadError` on the first
        problem found, leaving the decoder ``FAILED``.
        """
        if start is None:
            start = now()

        handlers = {
            DecoderState.EXPECT_OPERATIONS: self._read_operations,
            DecoderState.EXPECT_MAP: self._read_map,
            DecoderState.EXPECT_FILES_OR_END: self._read_file,
        }
        try:
            while self.state in handlers:
                self.logger.debug("Decoder in state %s", self.state.name)
                self.state = handlers[self.state]()
        except UploadError:
            self.state = DecoderState.FAILED
            raise

        assert self.params is not None
        self.params.headers = headers
        self.params.read_time = TraceTiming(start, now())
        return self.params

    def _next_part(self, error_class: type[UploadError], message: str) -> Part | None:
        try:
            return self.reader.next_part()
        except SizeExceededError:
            raise
        except (StreamError, OSError) as err:
            self.logger.warning("%s: %s", message, err)
            raise error_class(message) from err

    def _decode_json(self, part: Part, message: str) -> Any:
        try:
            return json.loads(part.read())
        except SizeExceededError:
            raise
        except (ValueError, OSError, RecursionError) as err:
            self.logger.warning("%s: %s", message, err)
            raise DecodeError(message) from err

    def _read_operations(self) -> DecoderState:
        part = self._next_part(MalformedEnvelopeError, OPERATIONS_FIRST)
        if part is None or part.field_name != "operations":
            self.logger.warning("Expected the operations section, got %r", part)
            raise MalformedEnvelopeError(OPERATIONS_FIRST)

        self.params = OperationParams.from_dict(self._decode_json(part, OPERATIONS_DECODE_FAILED))
        return DecoderState.EXPECT_MAP

    def _read_map(self) -> DecoderState:
        part = self._next_part(MalformedEnvelopeError, MAP_SECOND)
        if part is None or part.field_name != "map":
            self.logger.warning("Expected the map section, got %r", part)
            raise MalformedEnvelopeError(MAP_SECOND)

        self.path_map = PathMap.from_json(self._decode_json(part, MAP_DECODE_FAILED))
        return DecoderState.EXPECT_FILES_OR_END

    def _read_file(self) -> DecoderState:
        assert self.path_map is not None

        part = self._next_part(StreamError, PART_FAILED)
        if part is None:
            unclaimed = self.path_map.unclaimed()
            if unclaimed:
                key = unclaimed[0]
                self.logger.warning("No section for keys %r", unclaimed)
                raise UploadBindingError("failed to get key %s from form" % (key,), key)
            return DecoderState.DONE

        self._bind(part)
        return DecoderState.EXPECT_FILES_OR_END

    def _bind(self, part: Part) -> None:
        assert self.params is not None and self.path_map is not None

        key = part.field_name
        paths = self.path_map.claim(key)

        upload = Upload(part, part.file_name, part.content_type, self.content_length)
        self.uploads.append(upload)
        for path in paths:
            self.params.add_upload(upload, key, path)

        if self.on_upload is not None:
            self.on_upload(upload)

        if self.config.get("SPOOL_UPLOADS", True):
            try:
                upload.spool(self.config)
            except (SizeExceededError, FileError):
                raise
            except (StreamError, OSError) as err:
                self.logger.warning("%s: %s", PART_FAILED, err)
                raise StreamError(PART_FAILED) from err

    def close(self) -> None:
        for upload in self.uploads:
            upload.close()
        self.reader.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(state={self.state.name})"
