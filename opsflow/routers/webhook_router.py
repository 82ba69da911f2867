import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from opsflow.core.security import verify_admin_api_key
from opsflow.integrations.oauth_state import OAuthStateStore
from opsflow.integrations.shopify_webhooks import ShopifyWebhookProcessor
from opsflow.routers.http_errors import DOMAIN_ERRORS, to_http_exception
from opsflow.services.webhook_service import build_shopify_webhook_response

_UNAUTHORIZED_WEBHOOK_ERRORS = frozenset(
    {"Missing required headers", "Unknown store or missing webhook secret", "Invalid signature"}
)


class OAuthStateIssueRequest(BaseModel):
    provider: str = Field(min_length=1, max_length=32)
    user_id: int


class OAuthStateVerifyRequest(BaseModel):
    state: str = Field(min_length=1, max_length=128)


def build_webhook_router(
    processor: ShopifyWebhookProcessor,
    oauth_states: OAuthStateStore,
    oauth_state_ttl_seconds: int,
) -> APIRouter:
    router = APIRouter(prefix="", tags=["webhooks"])
    logger = logging.getLogger(__name__)

    @router.post("/webhooks/shopify")
    async def shopify_webhook(request: Request) -> dict:
        raw_body = await request.body()
        result = await run_in_threadpool(processor.process, raw_body, dict(request.headers))
        response = build_shopify_webhook_response(result)

        if response["status"] == "rejected":
            status_code = 401 if result.error in _UNAUTHORIZED_WEBHOOK_ERRORS else 400
            raise HTTPException(status_code=status_code, detail=result.error)

        logger.info(
            "Shopify webhook handled",
            extra={
                "event": "shopify_webhook_handled",
                "status": response["status"],
                "topic": result.topic,
                "shop_domain": result.shop_domain,
            },
        )
        return response

    @router.post("/oauth/state", dependencies=[Depends(verify_admin_api_key)])
    def issue_oauth_state(payload: OAuthStateIssueRequest) -> dict:
        state = oauth_states.issue(payload.provider, payload.user_id)
        return {"state": state, "expires_in": oauth_state_ttl_seconds}

    @router.post("/oauth/state/verify", dependencies=[Depends(verify_admin_api_key)])
    def verify_oauth_state(payload: OAuthStateVerifyRequest) -> dict:
        try:
            consumed = oauth_states.consume(payload.state)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return {"valid": True, "provider": consumed.provider, "user_id": consumed.user_id}

    return router
