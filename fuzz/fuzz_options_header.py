import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from graphql_multipart.multipart import parse_media_type, parse_options_header


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    value = fdp.ConsumeRandomString()
    try:
        parse_options_header(value)
    except AssertionError:
        return

    try:
        parse_media_type(value)
    except ValueError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
