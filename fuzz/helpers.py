import atheris

PATH_SEGMENTS = ["variables", "a", "b", "0", "1", "[0]", "[1]", "[9]", ".", ""]


class EnhancedDataProvider(atheris.FuzzedDataProvider):
    def ConsumeRandomBytes(self) -> bytes:
        return self.ConsumeBytes(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeRandomString(self) -> str:
        return self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeVariablesPath(self) -> str:
        """A map path built mostly from pieces that resolve against the
        fuzzers' operations document, so that the binder gets past the prefix
        check.
        """
        count = self.ConsumeIntInRange(0, 6)
        return "".join(self.PickValueInList(PATH_SEGMENTS) for _ in range(count))
