class StoreError(Exception):
    """Base class for backing store failures."""


class DocumentNotFoundError(StoreError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Document not found: {path}")
        self.path = path


class DocumentWriteError(StoreError):
    pass


class StaleDocumentError(DocumentWriteError):
    """The document changed between read and conditional write."""

    def __init__(self, path: str, expected: dict | None = None, actual: dict | None = None) -> None:
        super().__init__(f"Document changed concurrently: {path}")
        self.path = path
        self.expected = expected or {}
        self.actual = actual or {}


class RelationalWriteError(StoreError):
    pass
