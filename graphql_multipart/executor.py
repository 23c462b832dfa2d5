from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable
    from typing import Any

    from .params import OperationParams


class ErrorKind(Enum):
    PROTOCOL = "protocol"
    USER = "user"


class ExecutionError:
    """An error reported by the execution engine, such as a query that does
    not parse or fails validation.  Protocol errors are the ones the client
    could have avoided by sending a well formed request.
    """

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.USER, extensions: dict[str, Any] | None = None) -> None:
        self.message = message
        self.kind = kind
        self.extensions = extensions

    def to_dict(self) -> dict[str, Any]:
        err: dict[str, Any] = {"message": self.message}
        if self.extensions:
            err["extensions"] = self.extensions
        return err

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ExecutionError):
            return self.message == other.message and self.kind == other.kind
        return NotImplemented

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, kind={self.kind!r})"


def status_for(errors: list[ExecutionError]) -> int:
    """422 if any of the errors is a protocol error, 200 otherwise."""
    if any(e.kind == ErrorKind.PROTOCOL for e in errors):
        return 422
    return 200


class GraphExecutor:
    """The GraphQL engine the transport hands a decoded request to.

    Subclasses implement :meth:`create_operation_context` and
    :meth:`dispatch_operation`.  By the time either is called every upload is
    bound into ``params.variables``.
    """

    def create_operation_context(self, ctx: Any, params: OperationParams) -> tuple[Any, list[ExecutionError] | None]:
        """Parse and validate ``params``.  Returns the operation context and
        ``None``, or whatever context could be built and a non-empty list of
        errors.
        """
        raise NotImplementedError()

    def dispatch_error(self, ctx: Any, errors: list[ExecutionError]) -> Any:
        return {"errors": [e.to_dict() for e in errors]}

    def dispatch_operation(self, ctx: Any, op_ctx: Any) -> tuple[Callable[[Any], Any], Any]:
        """Start running the operation.  Returns a function producing the
        response body, and the context to call it with.
        """
        raise NotImplementedError()

    def status_for(self, errors: list[ExecutionError]) -> int:
        return status_for(errors)
