class ConfigurationError(Exception):
    """Raised when a required integration credential or setting is missing."""


class UpstreamApiError(Exception):
    """Raised when a third-party API answers with a non-2xx status."""

    def __init__(self, service: str, status_code: int, body: str) -> None:
        super().__init__(f"{service} returned {status_code}: {body}")
        self.service = service
        self.status_code = status_code
        self.body = body


class RuleValidationError(ValueError):
    """Raised when a sender or filing rule is malformed."""


class UnbalancedEntryError(ValueError):
    """Raised when journal debits and credits do not balance."""


class DocumentProcessingError(Exception):
    """Raised when an attachment cannot be parsed correctly."""


class ClassificationError(Exception):
    """Raised when structured document classification fails after retries."""


class FilingTransitionError(Exception):
    """Raised when a filing status change is not allowed."""


class FilingConflictError(Exception):
    """Raised when another worker changed a filing record first."""


class DestinationWriteError(Exception):
    """Raised when a filed document cannot be written to its destination."""


class OAuthStateError(Exception):
    """Raised when an OAuth state token is unknown or expired."""


class QuoteAwardError(Exception):
    """Raised when an RFQ cannot be awarded."""


class ApprovalError(Exception):
    """Raised when an approval item cannot change state."""


class RecordNotFoundError(LookupError):
    """Raised when a referenced RFQ, quote or approval item does not exist."""
