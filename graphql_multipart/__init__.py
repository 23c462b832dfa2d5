__version__ = "0.1.0"

from .decoder import DecoderState, PathMap, UploadDecoder
from .executor import ErrorKind, ExecutionError, GraphExecutor
from .multipart import MultipartParser, MultipartReader, parse_media_type
from .params import OperationParams, Upload
from .transport import MultipartForm, Request
from .wsgi import UploadApp

__all__ = (
    "DecoderState",
    "ErrorKind",
    "ExecutionError",
    "GraphExecutor",
    "MultipartForm",
    "MultipartParser",
    "MultipartReader",
    "OperationParams",
    "PathMap",
    "Request",
    "Upload",
    "UploadApp",
    "UploadDecoder",
    "parse_media_type",
)
