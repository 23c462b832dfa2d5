from __future__ import annotations

import logging
from collections import deque
from email.errors import MessageError
from email.message import Message
from email.utils import collapse_rfc2231_value
from enum import IntEnum
from typing import TYPE_CHECKING, cast

from .exceptions import MultipartParseError, SizeExceededError, UploadExpiredError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterator
    from typing import Any, Literal, Protocol, TypeAlias, TypedDict

    class SupportsRead(Protocol):
        def read(self, __n: int) -> bytes: ...

    class MultipartCallbacks(TypedDict, total=False):
        on_part_begin: Callable[[], None]
        on_part_data: Callable[[bytes, int, int], None]
        on_part_end: Callable[[], None]
        on_header_begin: Callable[[], None]
        on_header_field: Callable[[bytes, int, int], None]
        on_header_value: Callable[[bytes, int, int], None]
        on_header_end: Callable[[], None]
        on_headers_finished: Callable[[], None]
        on_end: Callable[[], None]

    CallbackName: TypeAlias = Literal[
        "part_begin",
        "part_data",
        "part_end",
        "header_begin",
        "header_field",
        "header_value",
        "header_end",
        "headers_finished",
        "end",
    ]


class MultipartState(IntEnum):
    """Multipart parser states.

    These are used to keep track of the state of the parser, and are used to
    determine what to do when new data is encountered.
    """

    START = 0
    PREAMBLE = 1
    START_BOUNDARY = 2
    HEADER_FIELD_START = 3
    HEADER_FIELD = 4
    HEADER_VALUE_START = 5
    HEADER_VALUE = 6
    HEADER_VALUE_ALMOST_DONE = 7
    HEADER_VALUE_FOLD = 8
    HEADERS_ALMOST_DONE = 9
    PART_DATA = 10
    PART_DATA_END = 11
    BOUNDARY_PADDING = 12
    END_BOUNDARY = 13
    END = 14


# Flags for the multipart parser.
FLAG_PART_BOUNDARY = 1
FLAG_LAST_BOUNDARY = 2
FLAG_PADDING = 4

# Get constants.  Iterating over a bytes object gives you an integer, so we
# compare against the integer value of each character.
CR = b"\r"[0]
LF = b"\n"[0]
COLON = b":"[0]
SPACE = b" "[0]
TAB = b"\t"[0]
HYPHEN = b"-"[0]

# fmt: off
# Mask for ASCII characters that can be http tokens.
# Per RFC7230 - 3.2.6, this is all alpha-numeric characters
# and these: !#$%&'*+-.^_`|~
TOKEN_CHARS_SET = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    b"abcdefghijklmnopqrstuvwxyz"
    b"0123456789"
    b"!#$%&'*+-.^_`|~")
# fmt: on

REQUEST_TOO_LARGE = "failed to parse multipart form, request body too large"


def _is_token(value: str) -> bool:
    if not value:
        return False
    try:
        raw = value.encode("ascii")
    except UnicodeEncodeError:
        return False
    return all(c in TOKEN_CHARS_SET for c in raw)


def parse_options_header(value: str | bytes | None) -> tuple[str, dict[str, str]]:
    """Parses a Content-Type or Content-Disposition header into a value in the
    following format: (content_type, {parameters}).

    This is the lenient variant: it never validates the main value, which is
    what we want for the headers of the individual sections.
    """
    if not value:
        return ("", {})

    if isinstance(value, bytes):  # pragma: no cover
        value = value.decode("latin-1")

    # If we have no options, return the string as-is.
    if ";" not in value:
        return (value.lower().strip(), {})

    # The email module knows how to parse parameters, including the quoted
    # and RFC 2231 forms.
    message = Message()
    message["content-type"] = value
    params = message.get_params()
    assert params, "At least the content type value should be present"
    ctype = params.pop(0)[0].lower().strip()
    options: dict[str, str] = {}
    for key, param in params:
        if isinstance(param, tuple):
            param = collapse_rfc2231_value(param)

        # If the value is a filename, we need to fix a bug on IE6 that sends
        # the full file path instead of the filename.
        if key == "filename":
            if param[1:3] == ":\\" or param[:2] == "\\\\":
                param = param.split("\\")[-1]

        options[key] = param
    return ctype, options


def parse_media_type(value: str | bytes | None) -> tuple[str, dict[str, str]]:
    """Parses and validates a media type header such as
    ``multipart/form-data; boundary=xyz``.

    Raises :class:`ValueError` if the value is empty, the type or subtype are
    not valid tokens, or a parameter name is not a valid token.
    """
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    if not value or not value.strip():
        raise ValueError("no media type")

    try:
        ctype, options = parse_options_header(value)
    except MessageError as err:
        raise ValueError(str(err)) from err

    maintype, sep, subtype = ctype.partition("/")
    if not sep or not _is_token(maintype) or not _is_token(subtype):
        raise ValueError("invalid media type %r" % ctype)

    for key in options:
        if not _is_token(key):
            raise ValueError("invalid media type parameter %r" % key)

    return ctype, options


class MultipartParser:
    """Incremental multipart/form-data parser.

    Chunks of the body are pushed in with :meth:`write`, and the parser
    reports what it finds through the ``callbacks`` dict.  Callbacks that
    take ``data, start, end`` receive a slice of the chunk being written;
    the others take no arguments.

    Data callbacks: ``on_part_data`` for section content, ``on_header_field``
    for the name before the colon and ``on_header_value`` for what follows it.
    These may fire several times per item when it spans chunks.

    Notifications: ``on_part_begin`` and ``on_part_end`` around each section,
    ``on_header_begin`` and ``on_header_end`` around each header line,
    ``on_headers_finished`` at the blank line before the content and
    ``on_end`` after the closing delimiter.

    Lines before the first delimiter are skipped as a preamble, and spaces or
    tabs between a delimiter and its CRLF are allowed.  A header line that
    starts with whitespace continues the previous header's value, joined with
    a single space.

    :param boundary: boundary from the request's Content-Type.

    :param callbacks: callbacks keyed by the names above.
    """

    def __init__(self, boundary: bytes | str, callbacks: MultipartCallbacks = {}) -> None:
        self.logger = logging.getLogger(__name__)
        self.callbacks = callbacks
        self.state = MultipartState.START
        self.index = self.flags = 0

        if isinstance(boundary, str):
            boundary = boundary.encode("latin-1")
        if not boundary:
            raise ValueError("boundary must not be empty")
        self.boundary = b"\r\n--" + boundary

        # Tail of the part data that could be the beginning of a delimiter
        # straddling two chunks.
        self._pending = b""

    def callback(self, name: CallbackName, data: bytes | None = None, start: int | None = None, end: int | None = None) -> None:
        """This function calls a provided callback with some data.  If the
        callback is not set, will do nothing.  Empty data slices are never
        reported.
        """
        on_name = "on_" + name
        func = self.callbacks.get(on_name)
        if func is None:
            return
        func = cast("Callable[..., Any]", func)
        if data is not None:
            if start is not None and start == end:
                return
            self.logger.debug("Calling %s with data[%d:%d]", on_name, start, end)
            func(data, start, end)
        else:
            self.logger.debug("Calling %s with no data", on_name)
            func()

    def set_callback(self, name: CallbackName, new_func: Callable[..., Any] | None) -> None:
        """Update the function for a callback.  Removes from the callbacks dict
        if new_func is None.
        """
        if new_func is None:
            self.callbacks.pop("on_" + name, None)  # type: ignore[misc]
        else:
            self.callbacks["on_" + name] = new_func  # type: ignore[literal-required]

    def _error(self, msg: str, offset: int) -> MultipartParseError:
        self.logger.warning(msg)
        e = MultipartParseError(msg)
        e.offset = offset
        return e

    def write(self, data: bytes) -> int:
        """Write some data to the parser, which will perform size verification,
        and then parse the data into the appropriate location (e.g. header,
        data, etc.), and pass this on to the underlying callback.  If an error
        is encountered, a MultipartParseError will be raised.

        :param data: the data to write to the parser

        :return: the number of bytes processed
        """
        return self._internal_write(data, len(data))

    def _internal_write(self, data: bytes, length: int) -> int:
        boundary = self.boundary
        boundary_length = len(boundary)

        state = self.state
        index = self.index
        flags = self.flags

        # Start of the header name or value in this chunk.  A header that
        # continues from the previous chunk starts at 0.
        mark = 0

        i = 0
        while i < length:
            c = data[i]

            if state == MultipartState.START:
                # At the start of a line, before the first delimiter.
                index = 0
                flags &= ~FLAG_PADDING
                state = MultipartState.START_BOUNDARY
                i -= 1

            elif state == MultipartState.PREAMBLE:
                # Lines that are not a delimiter come before the first section
                # and are ignored.
                lf = data.find(b"\n", i, length)
                if lf == -1:
                    i = length
                    break
                i = lf
                state = MultipartState.START

            elif state == MultipartState.START_BOUNDARY:
                # The first delimiter has no leading CRLF, so we match against
                # the boundary without it.
                if index == boundary_length - 2:
                    if c == HYPHEN and not flags & FLAG_PADDING:
                        state = MultipartState.END_BOUNDARY
                    elif c == SPACE or c == TAB:
                        flags |= FLAG_PADDING
                    elif c == CR:
                        index += 1
                    else:
                        state = MultipartState.PREAMBLE
                        i -= 1

                elif index == boundary_length - 1:
                    if c != LF:
                        state = MultipartState.PREAMBLE
                        i -= 1
                    else:
                        index = 0
                        flags &= ~FLAG_PADDING
                        self.callback("part_begin")
                        state = MultipartState.HEADER_FIELD_START

                elif c != boundary[index + 2]:
                    state = MultipartState.PREAMBLE
                    i -= 1

                else:
                    index += 1

            elif state == MultipartState.HEADER_FIELD_START:
                index = 0

                # A blank line ends the headers.
                if c == CR:
                    state = MultipartState.HEADERS_ALMOST_DONE
                else:
                    self.callback("header_begin")
                    mark = i
                    state = MultipartState.HEADER_FIELD
                    i -= 1

            elif state == MultipartState.HEADER_FIELD:
                if c == COLON:
                    if index == 0:
                        raise self._error("Found 0-length header at %d" % (i,), i)

                    self.callback("header_field", data, mark, i)
                    state = MultipartState.HEADER_VALUE_START

                elif c not in TOKEN_CHARS_SET:
                    raise self._error("Found invalid character %r in header at %d" % (c, i), i)

                else:
                    index += 1

            elif state == MultipartState.HEADER_VALUE_START:
                # Skip leading spaces.
                if c != SPACE and c != TAB:
                    mark = i
                    state = MultipartState.HEADER_VALUE
                    i -= 1

            elif state == MultipartState.HEADER_VALUE:
                cr = data.find(b"\r", i, length)
                if cr == -1:
                    i = length
                    break

                self.callback("header_value", data, mark, cr)
                state = MultipartState.HEADER_VALUE_ALMOST_DONE
                i = cr

            elif state == MultipartState.HEADER_VALUE_ALMOST_DONE:
                if c != LF:
                    raise self._error("Did not find LF character at end of header (found %r)" % (c,), i)
                state = MultipartState.HEADER_VALUE_FOLD

            elif state == MultipartState.HEADER_VALUE_FOLD:
                # A line starting with whitespace continues the previous value.
                if c == SPACE or c == TAB:
                    self.callback("header_value", b" ", 0, 1)
                    state = MultipartState.HEADER_VALUE_START
                else:
                    self.callback("header_end")
                    state = MultipartState.HEADER_FIELD_START
                    i -= 1

            elif state == MultipartState.HEADERS_ALMOST_DONE:
                if c != LF:
                    raise self._error("Did not find LF at end of headers (found %r)" % (c,), i)

                self.callback("headers_finished")
                self._pending = b""
                state = MultipartState.PART_DATA

            elif state == MultipartState.PART_DATA:
                pending = self._pending
                buf = pending + data[i:length]
                pos = buf.find(boundary)

                if pos == -1:
                    # Hold back enough bytes to recognise a delimiter that
                    # continues in the next chunk.
                    keep = min(len(buf), boundary_length - 1)
                    self.callback("part_data", buf, 0, len(buf) - keep)
                    self._pending = buf[len(buf) - keep :]
                    i = length
                    break

                self.callback("part_data", buf, 0, pos)
                self._pending = b""
                index = 0
                state = MultipartState.PART_DATA_END
                # Continue right after the delimiter.
                i += pos + boundary_length - len(pending) - 1

            elif state == MultipartState.PART_DATA_END:
                if index == 0:
                    index = 1
                    if c == CR:
                        flags |= FLAG_PART_BOUNDARY
                    elif c == HYPHEN:
                        flags |= FLAG_LAST_BOUNDARY
                    elif c == SPACE or c == TAB:
                        index = 0
                        state = MultipartState.BOUNDARY_PADDING
                    else:
                        # Not a delimiter after all: the bytes belong to the part.
                        self.callback("part_data", boundary, 0, boundary_length)
                        state = MultipartState.PART_DATA
                        i -= 1

                elif flags & FLAG_PART_BOUNDARY:
                    flags &= ~FLAG_PART_BOUNDARY
                    if c == LF:
                        self.callback("part_end")
                        self.callback("part_begin")
                        state = MultipartState.HEADER_FIELD_START
                    else:
                        # The CR may still start a real delimiter.
                        self.callback("part_data", boundary, 0, boundary_length)
                        self._pending = b"\r"
                        state = MultipartState.PART_DATA
                        i -= 1

                elif flags & FLAG_LAST_BOUNDARY:
                    flags &= ~FLAG_LAST_BOUNDARY
                    if c == HYPHEN:
                        self.callback("part_end")
                        self.callback("end")
                        state = MultipartState.END
                    else:
                        self.callback("part_data", boundary + b"-", 0, boundary_length + 1)
                        self._pending = b""
                        state = MultipartState.PART_DATA
                        i -= 1

            elif state == MultipartState.BOUNDARY_PADDING:
                # Whitespace between a delimiter and its CRLF.
                if index == 0:
                    if c == CR:
                        index = 1
                    elif c != SPACE and c != TAB:
                        raise self._error("Found %r after boundary at %d" % (c, i), i)

                elif c != LF:
                    raise self._error("Did not find LF at end of boundary (%d)" % (i,), i)

                else:
                    index = 0
                    self.callback("part_end")
                    self.callback("part_begin")
                    state = MultipartState.HEADER_FIELD_START

            elif state == MultipartState.END_BOUNDARY:
                if c != HYPHEN:
                    state = MultipartState.PREAMBLE
                    i -= 1
                else:
                    self.callback("end")
                    state = MultipartState.END

            elif state == MultipartState.END:
                # Anything after the closing delimiter is an epilogue.
                self.logger.debug("Skipping %d bytes after last boundary", length - i)
                i = length
                break

            else:  # pragma: no cover (error case)
                raise self._error("Reached an unknown state %d at %d" % (state, i), i)

            i += 1

        # Report the part of a header name or value that is in this chunk.
        if state == MultipartState.HEADER_FIELD:
            self.callback("header_field", data, mark, length)
        elif state == MultipartState.HEADER_VALUE:
            self.callback("header_value", data, mark, length)

        self.state = state
        self.index = index
        self.flags = flags

        return length

    def finalize(self) -> None:
        """Finalize this parser, which signals that we are finished parsing.

        Raises a MultipartParseError if the body ended before the closing
        delimiter.
        """
        if self.state != MultipartState.END:
            raise self._error("Unexpected end of multipart body in state %s" % (self.state.name,), -1)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(boundary={self.boundary!r})"


class Part:
    """One section of a multipart body, as handed out by
    :class:`MultipartReader`.

    The section's content is a single pass stream that stays readable until
    the reader moves on to the next section.  After that, :meth:`read` raises
    :class:`~graphql_multipart.exceptions.UploadExpiredError`.
    """

    def __init__(self, reader: MultipartReader, headers: dict[str, str]) -> None:
        self._reader = reader
        self._buffer = bytearray()
        self._done = False
        self._expired = False
        self.headers = headers

        disposition, options = parse_options_header(headers.get("content-disposition"))
        self.disposition = disposition
        self.field_name = options.get("name", "")
        self.file_name = options.get("filename")
        self.content_type = headers.get("content-type", "")

    @property
    def expired(self) -> bool:
        return self._expired

    def read(self, size: int = -1) -> bytes:
        if self._expired:
            raise UploadExpiredError("section %r is no longer readable" % (self.field_name,))

        while not self._done and (size < 0 or len(self._buffer) < size):
            self._reader._fill()

        if size < 0 or size >= len(self._buffer):
            data = bytes(self._buffer)
            self._buffer.clear()
        else:
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
        return data

    def close(self) -> None:
        """Skip whatever is left of this section and make it unreadable."""
        if self._expired:
            return
        while not self._done:
            self._buffer.clear()
            self._reader._fill()
        self._buffer.clear()
        self._expired = True

    def _feed(self, data: bytes) -> None:
        self._buffer += data

    def _finish(self) -> None:
        self._done = True

    def __repr__(self) -> str:
        return "{}(field_name={!r}, file_name={!r}, content_type={!r})".format(
            self.__class__.__name__, self.field_name, self.file_name, self.content_type
        )


class MultipartReader:
    """Pull based, forward only reader over a multipart body.

    Each call to :meth:`next_part` returns the next section, or ``None`` once
    the closing delimiter has been read.  Moving to the next section closes
    the previous one.

    :param stream: the request body, anything with ``read(n)``.

    :param boundary: the boundary from the request's Content-Type header.

    :param chunk_size: how many bytes to read from ``stream`` at a time.
    """

    def __init__(self, stream: SupportsRead, boundary: bytes | str, chunk_size: int = 64 * 1024) -> None:
        self.logger = logging.getLogger(__name__)
        self.chunk_size = chunk_size
        self._stream = stream
        self._parts: deque[Part] = deque()
        self._writing: Part | None = None
        self._current: Part | None = None
        self._ended = False

        header_name: list[bytes] = []
        header_value: list[bytes] = []
        headers: dict[str, str] = {}

        def on_part_begin() -> None:
            headers.clear()

        def on_header_field(data: bytes, start: int, end: int) -> None:
            header_name.append(data[start:end])

        def on_header_value(data: bytes, start: int, end: int) -> None:
            header_value.append(data[start:end])

        def on_header_end() -> None:
            name = b"".join(header_name).decode("latin-1").lower()
            headers[name] = b"".join(header_value).decode("utf-8", "replace").strip()
            del header_name[:]
            del header_value[:]

        def on_headers_finished() -> None:
            part = Part(self, dict(headers))
            self.logger.debug("Found section %r", part)
            self._writing = part
            self._parts.append(part)

        def on_part_data(data: bytes, start: int, end: int) -> None:
            assert self._writing is not None
            self._writing._feed(data[start:end])

        def on_part_end() -> None:
            assert self._writing is not None
            self._writing._finish()
            self._writing = None

        def on_end() -> None:
            self._ended = True

        self.parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": on_part_begin,
                "on_header_field": on_header_field,
                "on_header_value": on_header_value,
                "on_header_end": on_header_end,
                "on_headers_finished": on_headers_finished,
                "on_part_data": on_part_data,
                "on_part_end": on_part_end,
                "on_end": on_end,
            },
        )

    def _fill(self) -> None:
        """Feed one more chunk of the body to the parser."""
        chunk = self._stream.read(self.chunk_size)
        if not chunk:
            self.parser.finalize()
            # finalize() only returns once the closing delimiter was seen.
            return
        self.parser.write(chunk)

    def next_part(self) -> Part | None:
        if self._current is not None:
            self._current.close()
            self._current = None

        while not self._parts:
            if self._ended:
                return None
            self._fill()

        self._current = self._parts.popleft()
        return self._current

    def __iter__(self) -> Iterator[Part]:
        while True:
            part = self.next_part()
            if part is None:
                return
            yield part

    def close(self) -> None:
        if self._current is not None:
            self._current._expired = True
            self._current = None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(parser={self.parser!r})"


class BodyLimitReader:
    """Wraps a request body so that no more than ``limit`` bytes can ever be
    read from it.  Reading past the limit raises
    :class:`~graphql_multipart.exceptions.SizeExceededError`, whatever the
    declared Content-Length said.
    """

    def __init__(self, stream: SupportsRead, limit: int) -> None:
        self.logger = logging.getLogger(__name__)
        self._stream = stream
        self.limit = limit
        self.bytes_read = 0
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        remaining = self.limit - self.bytes_read
        # Ask for one extra byte so that we can tell when the body goes over.
        if size < 0 or size > remaining:
            size = remaining + 1

        data = self._stream.read(size)
        if len(data) > remaining:
            self.bytes_read = self.limit
            self.logger.warning("Request body is larger than the limit of %d bytes", self.limit)
            raise SizeExceededError(REQUEST_TOO_LARGE)

        self.bytes_read += len(data)
        return data

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        close = getattr(self._stream, "close", None)
        if close is not None:
            close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(limit={self.limit!r})"
