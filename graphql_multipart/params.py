from __future__ import annotations

import logging
import os
import re
import shutil
import sys
import tempfile
from enum import Enum
from io import BufferedRandom, BytesIO
from typing import TYPE_CHECKING, cast

from .exceptions import DecodeError, FileError, UploadBindingError, UploadExpiredError

if TYPE_CHECKING:  # pragma: no cover
    from datetime import datetime
    from typing import Any, TypedDict, Union

    from .multipart import SupportsRead

    class FileConfig(TypedDict, total=False):
        UPLOAD_DIR: str | bytes | None
        UPLOAD_KEEP_EXTENSIONS: bool
        MAX_MEMORY_FILE_SIZE: int

    PathSegment = Union[str, int]

logger = logging.getLogger(__name__)

OPERATIONS_DECODE_FAILED = "operations form field could not be decoded"


class TraceTiming:
    """When reading the request started and ended."""

    def __init__(self, start: datetime, end: datetime) -> None:
        self.start = start
        self.end = end

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TraceTiming):
            return self.start == other.start and self.end == other.end
        return NotImplemented

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(start={self.start!r}, end={self.end!r})"


class OperationParams:
    """The decoded, not yet executed GraphQL request.

    Uploads are spliced into :attr:`variables` in place with
    :meth:`add_upload` before the params are handed to the executor.
    """

    def __init__(
        self,
        query: str = "",
        operation_name: str | None = None,
        variables: dict[str, Any] | None = None,
        extensions: dict[str, Any] | None = None,
    ) -> None:
        self.query = query
        self.operation_name = operation_name
        self.variables = variables
        self.extensions = extensions
        self.headers: Any = None
        self.read_time: TraceTiming | None = None

    @classmethod
    def from_dict(cls, data: Any) -> OperationParams:
        """Build the params from the decoded ``operations`` JSON document.

        Raises :class:`DecodeError` when the document is not an object or one
        of the known members has the wrong type.
        """
        if not isinstance(data, dict):
            raise DecodeError(OPERATIONS_DECODE_FAILED)

        query = data.get("query")
        operation_name = data.get("operationName")
        variables = data.get("variables")
        extensions = data.get("extensions")

        if query is None:
            query = ""
        if (
            not isinstance(query, str)
            or not isinstance(operation_name, (str, type(None)))
            or not isinstance(variables, (dict, type(None)))
            or not isinstance(extensions, (dict, type(None)))
        ):
            raise DecodeError(OPERATIONS_DECODE_FAILED)

        return cls(query=query, operation_name=operation_name, variables=variables, extensions=extensions)

    def add_upload(self, upload: Upload, key: str, path: str) -> None:
        """Put ``upload`` at ``path`` inside the variables.

        ``path`` is relative to the operations document, so it has to start
        with ``variables``.  Raises :class:`UploadBindingError` naming ``key``
        and ``path`` if it does not resolve.
        """
        segments = parse_path(path)
        if not segments or segments[0] != "variables":
            logger.warning("Path %r for key %r does not start with variables", path, key)
            raise UploadBindingError(
                "invalid operations paths for key %s" % (key,), key, path, PathErrorKind.MISSING_PREFIX
            )

        if len(segments) == 1:
            # Only the values inside the variables may be replaced.
            kind = PathErrorKind.NOT_CONTAINER
        else:
            kind = assign_path(self.variables, segments[1:], upload)
        if kind is not None:
            logger.warning("Could not bind key %r at %r: %s", key, path, kind.value)
            raise UploadBindingError(
                "invalid operations path %s for key %s: %s" % (path, key, kind.value), key, path, kind
            )

    def __eq__(self, other: object) -> bool:
        if isinstance(other, OperationParams):
            return (
                self.query == other.query
                and self.operation_name == other.operation_name
                and self.variables == other.variables
                and self.extensions == other.extensions
            )
        return NotImplemented

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(query={self.query!r}, operation_name={self.operation_name!r})"


class PathErrorKind(Enum):
    """Every way a variables path can fail to resolve."""

    MISSING_PREFIX = "path does not start with variables"
    MISSING_KEY = "missing object key"
    BAD_INDEX = "array index out of range"
    NOT_CONTAINER = "value is not an object or array"


_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]|(\.)")


def parse_path(path: str) -> list[PathSegment]:
    """Split a dot/bracket path like ``variables.files.0`` or
    ``variables.files[0]`` into segments.  Bracketed segments are returned as
    ints.  Returns an empty list if the path is malformed.
    """
    segments: list[PathSegment] = []
    expect_name = True
    pos = 0
    while pos < len(path):
        m = _SEGMENT_RE.match(path, pos)
        if m is None:
            return []

        name, index, dot = m.groups()
        if dot is not None:
            if expect_name:
                return []
            expect_name = True
        elif index is not None:
            if expect_name and segments:
                return []
            segments.append(int(index))
            expect_name = False
        else:
            if not expect_name:
                return []
            segments.append(name)
            expect_name = False
        pos = m.end()

    if expect_name:
        return []
    return segments


def assign_path(tree: Any, segments: list[PathSegment], value: Any) -> PathErrorKind | None:
    """Walk ``tree`` along ``segments`` and replace the final node with
    ``value``.

    Intermediate containers must already exist.  A missing final object key
    is created; a final array index must already be in range.  Returns the
    reason on failure and leaves the tree untouched, or ``None`` on success.
    """
    node = tree
    for i, segment in enumerate(segments):
        last = i == len(segments) - 1

        if isinstance(node, list):
            if isinstance(segment, str):
                if not segment.isdecimal():
                    return PathErrorKind.BAD_INDEX
                segment = int(segment)
            if segment >= len(node):
                return PathErrorKind.BAD_INDEX
        elif isinstance(node, dict):
            segment = str(segment)
            if not last and segment not in node:
                return PathErrorKind.MISSING_KEY
        else:
            return PathErrorKind.NOT_CONTAINER

        if last:
            node[segment] = value
        else:
            node = node[segment]

    return None


class File:
    """A spool for one upload's content.

    Data is kept in memory until it grows past ``MAX_MEMORY_FILE_SIZE``, and
    is then rolled over to a temporary file on disk.

    ============================ =========================================
    Config Key                   Description
    ============================ =========================================
    UPLOAD_DIR                   The directory to store the temporary file
                                 in.  If None, the system default is used.
    UPLOAD_KEEP_EXTENSIONS       Whether the temporary file keeps the
                                 extension of the uploaded filename.
    MAX_MEMORY_FILE_SIZE         The maximum number of bytes kept in memory
                                 before rolling over to disk.
    ============================ =========================================

    :param file_name: The name of the uploaded file.

    :param config: The configuration for this spool.
    """

    def __init__(self, file_name: str | None = None, config: FileConfig = {}) -> None:
        self.logger = logging.getLogger(__name__)
        self._config = config
        self._in_memory = True
        self._bytes_written = 0
        self._fileobj: BytesIO | BufferedRandom = BytesIO()
        self._file_name = file_name
        self._actual_file_name: bytes | None = None
        self._ext = os.path.splitext(file_name)[1] if file_name else ""

    @property
    def file_name(self) -> str | None:
        return self._file_name

    @property
    def actual_file_name(self) -> bytes | None:
        """The file name of the temporary file on disk, or None while the
        spool is in memory.
        """
        return self._actual_file_name

    @property
    def file_object(self) -> BytesIO | BufferedRandom:
        return self._fileobj

    @property
    def size(self) -> int:
        return self._bytes_written

    @property
    def in_memory(self) -> bool:
        return self._in_memory

    def flush_to_disk(self) -> None:
        """Move the in-memory data to a temporary file on disk.  Subsequent
        writes go to the disk file.
        """
        if not self._in_memory:
            self.logger.warning("Trying to flush to disk when we're not in memory")
            return

        self._fileobj.seek(0)
        new_file = self._get_disk_file()
        shutil.copyfileobj(self._fileobj, new_file)
        new_file.seek(self._bytes_written)

        old_fileobj = self._fileobj
        self._fileobj = new_file
        self._in_memory = False
        old_fileobj.close()

    def _get_disk_file(self) -> BufferedRandom:
        self.logger.info("Opening a file on disk")

        file_dir = self._config.get("UPLOAD_DIR")
        keep_extensions = self._config.get("UPLOAD_KEEP_EXTENSIONS", False)
        suffix = self._ext if keep_extensions and self._ext else None

        if isinstance(file_dir, bytes):
            dir: str | None = file_dir.decode(sys.getfilesystemencoding())
        else:
            dir = file_dir

        self.logger.info("Creating a temporary file with options: %r", {"suffix": suffix, "dir": dir})
        try:
            tmp_file = cast(BufferedRandom, tempfile.NamedTemporaryFile(suffix=suffix, dir=dir))
        except OSError:
            self.logger.exception("Error creating named temporary file")
            raise FileError("Error creating named temporary file")

        self._actual_file_name = os.fsencode(tmp_file.name)
        return tmp_file

    def write(self, data: bytes) -> int:
        bwritten = self._fileobj.write(data)
        if bwritten != len(data):
            self.logger.warning("bwritten != len(data) (%d != %d)", bwritten, len(data))
            return bwritten

        self._bytes_written += bwritten

        max_memory_file_size = self._config.get("MAX_MEMORY_FILE_SIZE")
        if self._in_memory and max_memory_file_size is not None and (self._bytes_written > max_memory_file_size):
            self.logger.info("Flushing to disk")
            self.flush_to_disk()

        return bwritten

    def finalize(self) -> None:
        """Flush and rewind so that the spool can be read from the start."""
        self._fileobj.flush()
        self._fileobj.seek(0)

    def read(self, size: int = -1) -> bytes:
        return self._fileobj.read(size)

    def close(self) -> None:
        self._fileobj.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(file_name={self.file_name!r}, size={self.size!r})"


class Upload:
    """A handle to one uploaded file.

    The same object is placed at every path the ``map`` section lists for its
    key, so all of them share one stream.  The content can be read once:
    either straight from the multipart body while the decoder is still on
    this section, or from a :class:`File` spool once :meth:`spool` has copied
    it out.

    :param file: the readable content, a section of the body or a spool.

    :param filename: the filename the client sent, if any.

    :param content_type: the section's Content-Type header.

    :param size: the request's declared Content-Length.  Sections do not
                 carry their own length, so this is only an upper bound.
    """

    def __init__(self, file: SupportsRead, filename: str | None, content_type: str, size: int | None) -> None:
        self._file: SupportsRead | None = file
        self.filename = filename
        self.content_type = content_type
        self.size = size

    @property
    def file(self) -> SupportsRead:
        if self._file is None:
            raise UploadExpiredError("upload %r has been closed" % (self.filename,))
        return self._file

    @property
    def spooled(self) -> bool:
        return isinstance(self._file, File)

    def read(self, size: int = -1) -> bytes:
        return self.file.read(size)

    def spool(self, config: FileConfig = {}) -> File:
        """Copy whatever has not been read yet into a :class:`File`, so that
        the content outlives the section it came from.
        """
        if isinstance(self._file, File):
            return self._file

        spool = File(self.filename, config=config)
        try:
            shutil.copyfileobj(self.file, spool)
        except BaseException:
            spool.close()
            raise
        spool.finalize()
        self._file = spool
        return spool

    def close(self) -> None:
        if self._file is None:
            return
        if isinstance(self._file, File):
            self._file.close()
        self._file = None

    def __repr__(self) -> str:
        return "{}(filename={!r}, content_type={!r}, size={!r})".format(
            self.__class__.__name__, self.filename, self.content_type, self.size
        )
