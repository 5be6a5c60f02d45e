class StatementAnalyzerError(Exception):
    """Base error for everything raised by the statement pipeline."""


class ConfigurationError(StatementAnalyzerError):
    """Raised when a required setting (e.g. an API key) is missing."""


class DocumentError(StatementAnalyzerError):
    """Raised when the uploaded PDF cannot be opened (e.g. wrong password)."""


class StagingError(StatementAnalyzerError):
    """Raised when the staged document cannot be fetched or stored."""


class ProviderError(StatementAnalyzerError):
    """Raised when the text-generation service answers with an HTTP error."""

    def __init__(self, status: int | None, message: str):
        super().__init__(f"{status}: {message}" if status else message)
        self.status = status
        self.message = message


class MalformedResponseError(StatementAnalyzerError):
    """Raised when a model response cannot be decoded as the expected JSON."""


class NotBankStatementError(StatementAnalyzerError):
    """Raised when any chunk reports that the document is not a bank statement."""

    def __init__(self, message: str = "The document you uploaded does not appear to be a valid bank statement."):
        super().__init__(message)
