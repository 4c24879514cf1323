class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


class ValidationError(ValueError):
    """Raised when a request payload is missing or has invalid fields."""


class CsvFormatError(ValueError):
    """Raised when a bank file cannot be turned into transactions."""

    def __init__(self, message, headers=None):
        super().__init__(message)
        self.headers = list(headers or [])


class LinkError(ValueError):
    """Raised when two transactions cannot be linked the way requested."""


class ImportFailedError(RuntimeError):
    """Raised when writing an import plan fails and the import was rolled back."""
