import logging
import secrets

from fastapi import Depends, Header, HTTPException, Request, status

from opsflow.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def _client_host(request: Request) -> str | None:
    return request.client.host if request.client else None


def _require_api_key(
    request: Request,
    presented_key: str | None,
    expected_key: str,
    *,
    scope: str,
) -> None:
    if not expected_key:
        logger.error(
            "API key for scope is not configured",
            extra={"event": f"{scope}_secret_missing", "scope": scope},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server authentication is not configured",
        )

    if not presented_key:
        logger.warning(
            "Rejected request without API key",
            extra={
                "event": f"{scope}_unauthorized_missing_key",
                "client_host": _client_host(request),
                "path": request.url.path,
            },
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")

    if not secrets.compare_digest(presented_key, expected_key):
        logger.warning(
            "Rejected request with invalid API key",
            extra={
                "event": f"{scope}_unauthorized_invalid_key",
                "client_host": _client_host(request),
                "path": request.url.path,
            },
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def verify_webhook_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-KEY"),
    settings: Settings = Depends(get_settings),
) -> None:
    _require_api_key(request, x_api_key, settings.webhook_secret.strip(), scope="webhook")


def verify_admin_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-KEY"),
    settings: Settings = Depends(get_settings),
) -> None:
    _require_api_key(request, x_api_key, settings.admin_api_key.strip(), scope="admin")
