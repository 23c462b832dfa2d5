import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from graphql_multipart.executor import GraphExecutor
    from graphql_multipart.transport import MultipartForm, Request


class EchoExecutor(GraphExecutor):
    def create_operation_context(self, ctx, params):
        return params.variables, None

    def dispatch_operation(self, ctx, op_ctx):
        return (lambda ctx: {"data": None}), ctx


class Body:
    def __init__(self, data: bytes) -> None:
        self.data = data

    def read(self, size: int = -1) -> bytes:
        if size < 0:
            size = len(self.data)
        chunk, self.data = self.data[:size], self.data[size:]
        return chunk


transport = MultipartForm(max_upload_size=1 << 16, config={"CHUNK_SIZE": 64})
executor = EchoExecutor()


def do(content_type: str, body: bytes) -> None:
    request = Request("POST", {"Content-Type": content_type, "Content-Length": str(len(body))}, Body(body))
    if transport.supports(request):
        response = transport.do(request, executor)
        assert response.status in (200, 422), response


def random_body(fdp: EnhancedDataProvider) -> None:
    do("multipart/form-data; boundary=boundary", fdp.ConsumeRandomBytes())


def random_sections(fdp: EnhancedDataProvider) -> None:
    boundary = "boundary"
    body = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="operations"\r\n\r\n'
        f"{fdp.ConsumeRandomString()}\r\n"
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="map"\r\n\r\n'
        f"{fdp.ConsumeRandomString()}\r\n"
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="0"; filename="a.txt"\r\n\r\n'
        f"{fdp.ConsumeRandomString()}\r\n"
        f"--{boundary}--\r\n"
    )
    do(f"multipart/form-data; boundary={boundary}", body.encode("utf-8", errors="ignore"))


def random_paths(fdp: EnhancedDataProvider) -> None:
    boundary = "boundary"
    path = fdp.ConsumeVariablesPath()
    body = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="operations"\r\n\r\n'
        '{"query": "", "variables": {"a": [null, {"b": null}]}}\r\n'
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="map"\r\n\r\n'
        f'{{"0": ["{path}"]}}\r\n'
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="0"; filename="a.txt"\r\n\r\n'
        "data\r\n"
        f"--{boundary}--\r\n"
    )
    do(f"multipart/form-data; boundary={boundary}", body.encode("utf-8", errors="ignore"))


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [random_body, random_sections, random_paths]
    target = fdp.PickValueInList(targets)
    target(fdp)


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
