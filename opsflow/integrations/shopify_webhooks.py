from __future__ import annotations

import base64
from collections.abc import Mapping
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from opsflow.core.schemas import WebhookProcessingResult
from opsflow.db.models import ShopifyStore, WebhookEvent

logger = logging.getLogger(__name__)

HMAC_HEADER = "x-shopify-hmac-sha256"
SHOP_DOMAIN_HEADER = "x-shopify-shop-domain"
TOPIC_HEADER = "x-shopify-topic"


class WebhookEventRepository(Protocol):
    def get_webhook_secret(self, shop_domain: str) -> str | None:
        ...

    def event_exists(self, idempotency_key: str) -> bool:
        ...

    def record_event(self, *, source: str, topic: str, idempotency_key: str, payload: str) -> bool:
        """Insert the event; return False when the key was taken concurrently."""
        ...


class SqlAlchemyWebhookEventRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_webhook_secret(self, shop_domain: str) -> str | None:
        with self._session_factory() as session:
            store = session.scalars(
                select(ShopifyStore).where(ShopifyStore.shop_domain == shop_domain.strip().lower())
            ).first()
            return store.webhook_secret if store is not None else None

    def event_exists(self, idempotency_key: str) -> bool:
        with self._session_factory() as session:
            found = session.scalars(
                select(WebhookEvent.id).where(WebhookEvent.idempotency_key == idempotency_key)
            ).first()
            return found is not None

    def record_event(self, *, source: str, topic: str, idempotency_key: str, payload: str) -> bool:
        with self._session_factory() as session:
            session.add(
                WebhookEvent(
                    source=source,
                    topic=topic,
                    idempotency_key=idempotency_key,
                    payload=payload,
                    status="received",
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True


def verify_webhook_signature(body: bytes | str, hmac_header: str, secret: str) -> bool:
    if not hmac_header or not secret:
        return False
    raw = body.encode("utf-8") if isinstance(body, str) else body
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, hmac_header.strip())


def build_idempotency_key(topic: str, payload: object) -> str:
    external_id = payload.get("id") if isinstance(payload, dict) else None
    if external_id is None:
        external_id = f"{int(time.time() * 1000)}-{secrets.token_hex(16)}"
    return f"shopify-{topic}-{external_id}"


class ShopifyWebhookProcessor:
    def __init__(self, repository: WebhookEventRepository) -> None:
        self._repository = repository

    def process(self, raw_body: bytes | str, headers: Mapping[str, str]) -> WebhookProcessingResult:
        lowered = {key.lower(): value for key, value in headers.items()}
        hmac_header = (lowered.get(HMAC_HEADER) or "").strip()
        shop_domain = (lowered.get(SHOP_DOMAIN_HEADER) or "").strip().lower()
        topic = (lowered.get(TOPIC_HEADER) or "").strip()

        if not hmac_header or not shop_domain or not topic:
            return self._reject("Missing required headers", topic=topic or None)

        secret = self._repository.get_webhook_secret(shop_domain)
        if not secret:
            return self._reject("Unknown store or missing webhook secret", topic=topic, shop_domain=shop_domain)

        if not verify_webhook_signature(raw_body, hmac_header, secret):
            return self._reject("Invalid signature", topic=topic, shop_domain=shop_domain)

        text = raw_body.decode("utf-8", errors="replace") if isinstance(raw_body, bytes) else raw_body
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return self._reject("Invalid JSON payload", topic=topic, shop_domain=shop_domain)
        if not isinstance(payload, dict):
            return self._reject("Invalid JSON payload", topic=topic, shop_domain=shop_domain)

        idempotency_key = build_idempotency_key(topic, payload)
        if self._repository.event_exists(idempotency_key) or not self._repository.record_event(
            source="shopify", topic=topic, idempotency_key=idempotency_key, payload=text
        ):
            return self._reject(
                "Already processed",
                topic=topic,
                shop_domain=shop_domain,
                idempotency_key=idempotency_key,
            )

        logger.info(
            "Shopify webhook accepted",
            extra={
                "event": "shopify_webhook_accepted",
                "topic": topic,
                "shop_domain": shop_domain,
                "idempotency_key": idempotency_key,
            },
        )
        return WebhookProcessingResult(
            should_process=True,
            payload=payload,
            topic=topic,
            shop_domain=shop_domain,
            idempotency_key=idempotency_key,
        )

    @staticmethod
    def _reject(
        error: str,
        *,
        topic: str | None = None,
        shop_domain: str | None = None,
        idempotency_key: str | None = None,
    ) -> WebhookProcessingResult:
        logger.warning(
            "Shopify webhook rejected",
            extra={
                "event": "shopify_webhook_rejected",
                "error": error,
                "topic": topic,
                "shop_domain": shop_domain,
            },
        )
        return WebhookProcessingResult(
            should_process=False,
            error=error,
            topic=topic,
            shop_domain=shop_domain,
            idempotency_key=idempotency_key,
        )
