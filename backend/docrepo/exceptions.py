"""Custom exceptions for docrepo.

Store failures raised by pymongo/motor are not wrapped; they reach the caller
unchanged.
"""


class DocRepoError(Exception):
    """Base exception for docrepo errors."""

    pass


class RepositoryConfigurationError(DocRepoError):
    """A repository was created before any client handle was registered."""

    pass


class QueryTranslationError(DocRepoError):
    """A predicate or selector cannot be expressed as a MongoDB document."""

    def __init__(self, message: str, expression: str | None = None):
        super().__init__(message)
        self.expression = expression


class OperationCancelledError(DocRepoError):
    """The cancel event fired before the store call completed."""

    def __init__(self, operation: str):
        super().__init__(f"{operation} cancelled")
        self.operation = operation
