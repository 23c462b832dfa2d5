from __future__ import annotations

from typing import Any


class UploadError(ValueError):
    """Base error class for everything that can go wrong while decoding a
    multipart upload request.  Every subclass is reported to the client with
    :attr:`status` and a JSON error envelope.
    """

    status = 422

    def __init__(self, message: str, extensions: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.extensions = extensions

    def to_dict(self) -> dict[str, Any]:
        err: dict[str, Any] = {"message": self.message}
        if self.extensions:
            err["extensions"] = self.extensions
        return err


class SizeExceededError(UploadError):
    """Raised when the request body is, or claims to be, larger than the
    configured maximum upload size.
    """


class MalformedEnvelopeError(UploadError):
    """Raised when the ``operations`` or ``map`` section is missing or out of
    order, or when the body is not a multipart body at all.
    """


class DecodeError(UploadError):
    """Raised when the ``operations`` or ``map`` section holds malformed JSON."""


class UploadBindingError(UploadError):
    """Raised when a file section cannot be bound into the operation's
    variables: unknown or repeated key, empty path list, or a path that does
    not resolve.
    """

    def __init__(self, message: str, key: str, path: str | None = None, kind: Any = None) -> None:
        extensions = {"key": key}
        if path is not None:
            extensions["path"] = path
        super().__init__(message, extensions)
        self.key = key
        self.path = path
        self.kind = kind


class StreamError(UploadError):
    """Raised when reading the request body fails part way through."""


class ParseError(StreamError):
    """This exception (or a subclass) is raised when the body does not follow
    the multipart grammar.
    """

    #: Offset in the input data chunk (*NOT* the overall stream) at which the
    #: parse error occurred.  It will be -1 if not specified.
    offset = -1


class MultipartParseError(ParseError):
    """Raised by :class:`~graphql_multipart.multipart.MultipartParser` when it
    detects an error while parsing.
    """


class UploadExpiredError(StreamError):
    """Raised when a section's content is read after the reader has moved past
    it.  Section streams are single pass and only valid until the next
    section is requested.
    """


class FileError(UploadError, OSError):
    """Exception class for problems with the spool :class:`File` class."""
