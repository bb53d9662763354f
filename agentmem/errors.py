"""
Shared error types for the memory engine.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class EmbeddingProviderError(RuntimeError):
    """Raised when neither the remote nor the local embedding backend answered."""


class MemoryStorageCancelledError(RuntimeError):
    """Raised when a write is aborted because its content could not be embedded."""

    def __init__(self, message: str = "Embedding failed, memory storage cancelled"):
        super().__init__(message)


class DimensionMismatchError(ValueError):
    def __init__(self, left: int, right: int):
        super().__init__(f"Vector dimension mismatch: {left} vs {right}")
        self.left = left
        self.right = right
