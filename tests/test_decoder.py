from __future__ import annotations

import unittest
from datetime import datetime, timezone
from io import BytesIO
from typing import TYPE_CHECKING

from graphql_multipart.decoder import DecoderState, PathMap, UploadDecoder
from graphql_multipart.exceptions import (
    DecodeError,
    MalformedEnvelopeError,
    SizeExceededError,
    StreamError,
    UploadBindingError,
    UploadExpiredError,
)
from graphql_multipart.multipart import BodyLimitReader, MultipartReader
from graphql_multipart.params import TraceTiming, Upload

from .utils import encode_multipart

if TYPE_CHECKING:
    from typing import Any

OPERATIONS = {
    "query": "mutation ($files: [Upload!]!) { uploads(files: $files) }",
    "operationName": "Uploads",
    "variables": {"files": [None, None]},
}


class TestPathMap(unittest.TestCase):
    def test_claim(self) -> None:
        m = PathMap({"0": ["variables.a", "variables.b"], "1": ["variables.c"]})
        self.assertEqual(len(m), 2)
        self.assertEqual(m.claim("0"), ["variables.a", "variables.b"])
        self.assertEqual(m.unclaimed(), ["1"])
        self.assertEqual(len(m), 1)

    def test_claim_twice(self) -> None:
        m = PathMap({"0": ["variables.a"]})
        m.claim("0")
        with self.assertRaises(UploadBindingError) as ctx:
            m.claim("0")
        self.assertEqual(ctx.exception.message, "invalid empty operations paths list for key 0")
        self.assertEqual(ctx.exception.extensions, {"key": "0"})

    def test_claim_unknown(self) -> None:
        m = PathMap({"0": ["variables.a"]})
        with self.assertRaises(UploadBindingError):
            m.claim("1")
        self.assertEqual(m.unclaimed(), ["0"])

    def test_claim_empty(self) -> None:
        m = PathMap({"0": []})
        with self.assertRaises(UploadBindingError):
            m.claim("0")

    def test_unclaimed_keeps_map_order(self) -> None:
        m = PathMap({"b": ["variables.b"], "a": ["variables.a"], "c": ["variables.c"]})
        m.claim("a")
        self.assertEqual(m.unclaimed(), ["b", "c"])

    def test_from_json(self) -> None:
        m = PathMap.from_json({"0": ["variables.a"]})
        self.assertEqual(m.unclaimed(), ["0"])
        self.assertEqual(len(PathMap.from_json({})), 0)

    def test_from_json_invalid(self) -> None:
        for data in ([], "x", None, {"0": "variables.a"}, {"0": [1]}, {"0": None}):
            with self.subTest(data=data):
                with self.assertRaises(DecodeError) as ctx:
                    PathMap.from_json(data)
                self.assertEqual(ctx.exception.message, "map form field could not be decoded")


class TestUploadDecoder(unittest.TestCase):
    def make(self, data: bytes, chunk_size: int = 64 * 1024, **kwargs: Any) -> UploadDecoder:
        reader = MultipartReader(BytesIO(data), "boundary", chunk_size=chunk_size)
        self.decoder = UploadDecoder(reader, len(data), **kwargs)
        return self.decoder

    def tearDown(self) -> None:
        self.decoder.close()

    def assert_fails(self, data: bytes, error: type[Exception], message: str) -> None:
        decoder = self.make(data)
        with self.assertRaises(error) as ctx:
            decoder.decode()
        self.assertEqual(ctx.exception.message, message)  # type: ignore[attr-defined]
        self.assertEqual(decoder.state, DecoderState.FAILED)

    def test_decode(self) -> None:
        data = encode_multipart(
            OPERATIONS,
            {"0": ["variables.files.0"], "1": ["variables.files.1"]},
            [("0", "a.txt", "text/plain", b"aaa"), ("1", "b.png", "image/png", b"bbb")],
        )
        decoder = self.make(data)
        self.assertEqual(decoder.state, DecoderState.EXPECT_OPERATIONS)

        params = decoder.decode()

        self.assertEqual(decoder.state, DecoderState.DONE)
        self.assertEqual(params.query, OPERATIONS["query"])
        self.assertEqual(params.operation_name, "Uploads")
        assert params.variables is not None
        a, b = params.variables["files"]
        self.assertIsInstance(a, Upload)
        self.assertEqual((a.filename, a.content_type, a.size), ("a.txt", "text/plain", len(data)))
        self.assertEqual((b.filename, b.content_type), ("b.png", "image/png"))
        self.assertEqual(a.read(), b"aaa")
        self.assertEqual(b.read(), b"bbb")
        self.assertEqual(decoder.uploads, [a, b])

    def test_shared_upload(self) -> None:
        data = encode_multipart(
            OPERATIONS,
            {"0": ["variables.files.0", "variables.files.1"]},
            [("0", "a.txt", "text/plain", b"aaa")],
        )
        params = self.make(data).decode()
        assert params.variables is not None
        a, b = params.variables["files"]
        self.assertIs(a, b)

    def test_no_files(self) -> None:
        data = encode_multipart({"query": "{ a }"}, {})
        params = self.make(data).decode()
        self.assertEqual(params.query, "{ a }")
        self.assertIsNone(params.variables)
        self.assertEqual(self.decoder.uploads, [])

    def test_headers_and_timing(self) -> None:
        data = encode_multipart({"query": "{ a }"}, {})
        start = datetime(2020, 1, 1, tzinfo=timezone.utc)
        params = self.make(data).decode({"X-Test": "1"}, start)
        self.assertEqual(params.headers, {"X-Test": "1"})
        assert params.read_time is not None
        self.assertIsInstance(params.read_time, TraceTiming)
        self.assertEqual(params.read_time.start, start)
        self.assertGreater(params.read_time.end, start)

    def test_default_start(self) -> None:
        params = self.make(encode_multipart({"query": "{ a }"}, {})).decode()
        assert params.read_time is not None
        self.assertLessEqual(params.read_time.start, params.read_time.end)

    def test_small_chunks(self) -> None:
        data = encode_multipart(
            OPERATIONS,
            {"0": ["variables.files.0"], "1": ["variables.files[1]"]},
            [("0", "a.txt", "text/plain", b"a" * 100), ("1", "b.txt", "text/plain", b"b" * 50)],
        )
        params = self.make(data, chunk_size=3).decode()
        assert params.variables is not None
        self.assertEqual([u.read() for u in params.variables["files"]], [b"a" * 100, b"b" * 50])

    def test_on_upload(self) -> None:
        seen: list[tuple[str | None, bytes]] = []

        def on_upload(upload: Upload) -> None:
            seen.append((upload.filename, upload.read(1)))

        data = encode_multipart(
            OPERATIONS,
            {"0": ["variables.files.0"], "1": ["variables.files.1"]},
            [("0", "a.txt", "text/plain", b"aaa"), ("1", "b.txt", "text/plain", b"bbb")],
        )
        params = self.make(data, on_upload=on_upload).decode()
        self.assertEqual(seen, [("a.txt", b"a"), ("b.txt", b"b")])

        # What the hook read is gone; the rest was spooled.
        assert params.variables is not None
        self.assertEqual([u.read() for u in params.variables["files"]], [b"aa", b"bb"])
        self.assertTrue(all(u.spooled for u in params.variables["files"]))

    def test_without_spooling(self) -> None:
        seen: list[bytes] = []

        data = encode_multipart(
            OPERATIONS,
            {"0": ["variables.files.0"], "1": ["variables.files.1"]},
            [("0", "a.txt", "text/plain", b"aaa"), ("1", "b.txt", "text/plain", b"bbb")],
        )
        params = self.make(data, config={"SPOOL_UPLOADS": False}, on_upload=lambda u: seen.append(u.read())).decode()
        self.assertEqual(seen, [b"aaa", b"bbb"])

        assert params.variables is not None
        for upload in params.variables["files"]:
            self.assertFalse(upload.spooled)
            with self.assertRaises(UploadExpiredError):
                upload.read()

    def test_spool_to_disk(self) -> None:
        data = encode_multipart(OPERATIONS, {"0": ["variables.files.0"]}, [("0", "a.txt", "text/plain", b"x" * 64)])
        params = self.make(data, config={"MAX_MEMORY_FILE_SIZE": 16}).decode()
        assert params.variables is not None
        upload = params.variables["files"][0]
        self.assertFalse(upload.file.in_memory)
        self.assertEqual(upload.read(), b"x" * 64)

    def test_close(self) -> None:
        data = encode_multipart(OPERATIONS, {"0": ["variables.files.0"]}, [("0", "a.txt", "text/plain", b"aaa")])
        params = self.make(data).decode()
        self.decoder.close()
        assert params.variables is not None
        with self.assertRaises(UploadExpiredError):
            params.variables["files"][0].read()

    def test_operations_missing(self) -> None:
        self.assert_fails(b"--boundary--\r\n", MalformedEnvelopeError, "first part must be operations")

    def test_operations_not_first(self) -> None:
        data = encode_multipart({"0": ["variables.file"]}, OPERATIONS).replace(b'"operations"', b'"other"', 1)
        self.assert_fails(data, MalformedEnvelopeError, "first part must be operations")

    def test_operations_bad_json(self) -> None:
        data = encode_multipart(b"{", {})
        self.assert_fails(data, DecodeError, "operations form field could not be decoded")

    def test_operations_batch(self) -> None:
        data = encode_multipart([{"query": "{ a }"}], {})
        self.assert_fails(data, DecodeError, "operations form field could not be decoded")

    def test_map_missing(self) -> None:
        data = encode_multipart(OPERATIONS, {}).replace(b'"map"', b'"other"', 1)
        self.assert_fails(data, MalformedEnvelopeError, "second part must be map")

    def test_map_bad_json(self) -> None:
        data = encode_multipart(OPERATIONS, b"[")
        self.assert_fails(data, DecodeError, "map form field could not be decoded")

    def test_map_not_object(self) -> None:
        data = encode_multipart(OPERATIONS, ["variables.files.0"])
        self.assert_fails(data, DecodeError, "map form field could not be decoded")

    def test_unknown_key(self) -> None:
        data = encode_multipart(OPERATIONS, {"0": ["variables.files.0"]}, [("1", "a.txt", "text/plain", b"a")])
        self.assert_fails(data, UploadBindingError, "invalid empty operations paths list for key 1")

    def test_leftover_keys(self) -> None:
        data = encode_multipart(
            OPERATIONS,
            {"0": ["variables.files.0"], "2": ["variables.files.1"], "1": ["variables.files.1"]},
            [("0", "a.txt", "text/plain", b"a")],
        )
        self.assert_fails(data, UploadBindingError, "failed to get key 2 from form")

    def test_bad_path(self) -> None:
        data = encode_multipart(OPERATIONS, {"0": ["variables.files.5"]}, [("0", "a.txt", "text/plain", b"a")])
        self.assert_fails(
            data,
            UploadBindingError,
            "invalid operations path variables.files.5 for key 0: array index out of range",
        )

    def test_bad_second_path(self) -> None:
        data = encode_multipart(
            OPERATIONS, {"0": ["variables.files.0", "files.1"]}, [("0", "a.txt", "text/plain", b"a")]
        )
        self.assert_fails(data, UploadBindingError, "invalid operations paths for key 0")

    def test_truncated_file(self) -> None:
        data = encode_multipart(OPERATIONS, {"0": ["variables.files.0"]}, [("0", "a.txt", "text/plain", b"a" * 100)])
        data = data[: data.index(b"a" * 100) + 50]
        self.assert_fails(data, StreamError, "failed to parse part")

    def test_truncated_between_files(self) -> None:
        data = encode_multipart(
            OPERATIONS,
            {"0": ["variables.files.0"], "1": ["variables.files.1"]},
            [("0", "a.txt", "text/plain", b"aaa"), ("1", "b.txt", "text/plain", b"bbb")],
        )
        data = data[: data.index(b"bbb") - 2]
        self.assert_fails(data, StreamError, "failed to parse part")

    def test_size_exceeded(self) -> None:
        data = encode_multipart(OPERATIONS, {"0": ["variables.files.0"]}, [("0", "a.txt", "text/plain", b"a" * 1000)])
        for chunk_size in (7, 64 * 1024):
            with self.subTest(chunk_size=chunk_size):
                reader = MultipartReader(BodyLimitReader(BytesIO(data), len(data) - 500), "boundary", chunk_size)
                self.decoder = UploadDecoder(reader)
                with self.assertRaises(SizeExceededError) as ctx:
                    self.decoder.decode()
                self.assertEqual(ctx.exception.message, "failed to parse multipart form, request body too large")
                self.assertEqual(self.decoder.state, DecoderState.FAILED)

    def test_failure_is_logged(self) -> None:
        decoder = self.make(encode_multipart(OPERATIONS, b"["))
        with self.assertLogs("graphql_multipart.decoder", level="WARNING"):
            with self.assertRaises(DecodeError):
                decoder.decode()


def test_state_order() -> None:
    assert list(DecoderState) == [
        DecoderState.EXPECT_OPERATIONS,
        DecoderState.EXPECT_MAP,
        DecoderState.EXPECT_FILES_OR_END,
        DecoderState.DONE,
        DecoderState.FAILED,
    ]
