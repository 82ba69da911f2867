from fastapi import HTTPException, status

from opsflow.core.errors import (
    ApprovalError,
    ConfigurationError,
    DestinationWriteError,
    FilingConflictError,
    FilingTransitionError,
    OAuthStateError,
    QuoteAwardError,
    RecordNotFoundError,
    RuleValidationError,
    UnbalancedEntryError,
    UpstreamApiError,
)


def to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, RecordNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (RuleValidationError, UnbalancedEntryError, OAuthStateError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, (FilingConflictError, FilingTransitionError, QuoteAwardError, ApprovalError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, (ConfigurationError, DestinationWriteError)):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, UpstreamApiError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"service": exc.service, "status_code": exc.status_code, "body": exc.body},
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


DOMAIN_ERRORS = (
    RecordNotFoundError,
    RuleValidationError,
    UnbalancedEntryError,
    OAuthStateError,
    FilingConflictError,
    FilingTransitionError,
    QuoteAwardError,
    ApprovalError,
    ConfigurationError,
    DestinationWriteError,
    UpstreamApiError,
)
