import asyncio
import base64
import hashlib
import hmac

from fastapi import FastAPI
from fastapi.testclient import TestClient
import pytest

from opsflow.core.config import Settings, get_settings
from opsflow.core.errors import RecordNotFoundError, UpstreamApiError
from opsflow.db.models import ShopifyStore, Vendor
from opsflow.db.session import get_db
from opsflow.integrations.oauth_state import OAuthStateStore
from opsflow.integrations.shopify_webhooks import ShopifyWebhookProcessor, SqlAlchemyWebhookEventRepository
from opsflow.routers import ledger_router
from opsflow.agents.document_agent import DocumentClassificationAgent
from opsflow.orchestration.filing_orchestrator import FilingOrchestrator
from opsflow.orchestration.inbox_scanner import InboxScanner
from opsflow.processing.document_processor import DocumentProcessor
from opsflow.routers.approval_router import build_approval_router
from opsflow.routers.email_router import build_email_router
from opsflow.routers.filing_router import build_filing_router
from opsflow.routers.http_errors import to_http_exception
from opsflow.routers.procurement_router import build_procurement_router
from opsflow.routers.webhook_router import build_webhook_router
from opsflow.routing.filing_rules import FilingRuleEngine
from opsflow.services.approval_service import ApprovalService
from opsflow.services.destination_writers import build_destination_registry
from opsflow.services.quote_service import QuoteService
from opsflow.services.sender_rule_service import SenderRuleService

ADMIN = {"X-API-KEY": "admin-key"}
_SHOP_SECRET = "shop-secret"


def _on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class _LoopTrackingProcessor(ShopifyWebhookProcessor):
    def __init__(self, repository) -> None:  # noqa: ANN001
        super().__init__(repository)
        self.ran_on_event_loop: list[bool] = []

    def process(self, raw_body, headers):  # noqa: ANN001
        self.ran_on_event_loop.append(_on_event_loop())
        return super().process(raw_body, headers)


class _LoopTrackingOrchestrator(FilingOrchestrator):
    ran_on_event_loop: list[bool]

    def process_email_for_filing(self, email_id):  # noqa: ANN001
        self.ran_on_event_loop.append(_on_event_loop())
        return super().process_email_for_filing(email_id)


@pytest.fixture()
def client(session_factory):
    with session_factory() as session:
        session.add(ShopifyStore(shop_domain="demo.myshopify.com", webhook_secret=_SHOP_SECRET))
        session.add(Vendor(name="Acme", email="sales@acme.example"))
        session.add(Vendor(name="Globex", email="bids@globex.example"))
        session.commit()

    app = FastAPI()
    app.state.webhook_processor = _LoopTrackingProcessor(SqlAlchemyWebhookEventRepository(session_factory))
    app.include_router(build_approval_router(ApprovalService(session_factory, auto_approve_threshold=500)))
    app.include_router(build_procurement_router(QuoteService(session_factory)))
    app.include_router(
        build_webhook_router(
            app.state.webhook_processor,
            OAuthStateStore(session_factory),
            600,
        )
    )
    app.include_router(ledger_router.router)

    def _db():
        with session_factory() as session:
            yield session

    app.dependency_overrides[get_settings] = lambda: Settings(admin_api_key="admin-key", webhook_secret="hook-key")
    app.dependency_overrides[get_db] = _db
    return TestClient(app)


def _shopify_headers(body: bytes, secret: str = _SHOP_SECRET) -> dict[str, str]:
    signature = base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()
    return {
        "X-Shopify-Hmac-Sha256": signature,
        "X-Shopify-Shop-Domain": "demo.myshopify.com",
        "X-Shopify-Topic": "orders/paid",
        "Content-Type": "application/json",
    }


def test_admin_routes_require_api_key(client) -> None:
    assert client.get("/approvals").status_code == 401
    assert client.get("/approvals", headers={"X-API-KEY": "wrong"}).status_code == 401
    assert client.get("/approvals", headers=ADMIN).status_code == 200


def test_approval_lifecycle(client) -> None:
    created = client.post(
        "/approvals",
        json={"approval_type": "payment", "title": "Pay Acme", "monetary_value": 900, "ai_confidence": 70},
        headers=ADMIN,
    )
    assert created.status_code == 201
    item = created.json()
    assert item["status"] == "pending"
    assert item["risk_assessment"] == "medium"

    approved = client.post(f"/approvals/{item['approval_id']}/approve", json={"actor": "alex"}, headers=ADMIN)
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"

    again = client.post(f"/approvals/{item['approval_id']}/reject", json={"actor": "sam"}, headers=ADMIN)
    assert again.status_code == 409
    missing = client.post("/approvals/999/approve", json={"actor": "alex"}, headers=ADMIN)
    assert missing.status_code == 404


def test_procurement_flow(client) -> None:
    rfq = client.post(
        "/rfqs", json={"rfq_number": "RFQ-1", "material_name": "Steel", "quantity": 10}, headers=ADMIN
    ).json()
    cheap = client.post(
        f"/rfqs/{rfq['rfq_id']}/quotes",
        json={"vendor_id": 1, "unit_price": 9, "total_price": 90, "lead_time_days": 5},
        headers=ADMIN,
    )
    client.post(
        f"/rfqs/{rfq['rfq_id']}/quotes",
        json={"vendor_id": 2, "unit_price": 12, "total_price": 120, "lead_time_days": 3},
        headers=ADMIN,
    )
    assert cheap.status_code == 201

    recommendation = client.get(f"/rfqs/{rfq['rfq_id']}/recommendation", headers=ADMIN).json()
    assert recommendation["recommended"]["quote_id"] == cheap.json()["quote_id"]

    award = client.post(f"/rfqs/{rfq['rfq_id']}/award", json={}, headers=ADMIN)
    assert award.status_code == 200
    assert award.json()["winning_quote_id"] == cheap.json()["quote_id"]
    assert award.json()["notifications_queued"] == 2

    assert client.post(f"/rfqs/{rfq['rfq_id']}/award", json={}, headers=ADMIN).status_code == 409
    assert client.get("/rfqs/999/quotes", headers=ADMIN).status_code == 404
    late_quote = client.post(
        f"/rfqs/{rfq['rfq_id']}/quotes", json={"vendor_id": 1, "unit_price": 1, "total_price": 1}, headers=ADMIN
    )
    assert late_quote.status_code == 409


def test_shopify_webhook_statuses(client) -> None:
    body = b'{"id": 555}'

    accepted = client.post("/webhooks/shopify", content=body, headers=_shopify_headers(body))
    duplicate = client.post("/webhooks/shopify", content=body, headers=_shopify_headers(body))
    forged = client.post("/webhooks/shopify", content=body, headers=_shopify_headers(body, "nope"))
    bad_json = client.post("/webhooks/shopify", content=b"[]", headers=_shopify_headers(b"[]"))

    assert accepted.status_code == 200
    assert accepted.json()["idempotency_key"] == "shopify-orders/paid-555"
    assert duplicate.status_code == 200
    assert duplicate.json()["status"] == "duplicate"
    assert forged.status_code == 401
    assert bad_json.status_code == 400
    assert client.app.state.webhook_processor.ran_on_event_loop == [False, False, False, False]


def test_oauth_state_round_trip(client) -> None:
    issued = client.post("/oauth/state", json={"provider": "google", "user_id": 4}, headers=ADMIN).json()
    assert issued["expires_in"] == 600

    first = client.post("/oauth/state/verify", json={"state": issued["state"]}, headers=ADMIN)
    second = client.post("/oauth/state/verify", json={"state": issued["state"]}, headers=ADMIN)

    assert first.json() == {"valid": True, "provider": "google", "user_id": 4}
    assert second.status_code == 400


def test_journal_entry_endpoint(client) -> None:
    balanced = client.post(
        "/journal-entries",
        json={
            "description": "Supplier invoice",
            "lines": [{"account_code": "5000", "debit": 75.25}, {"account_code": "2000", "credit": 75.25}],
        },
        headers=ADMIN,
    )
    unbalanced = client.post(
        "/journal-entries",
        json={
            "description": "Typo",
            "lines": [{"account_code": "5000", "debit": 75.25}, {"account_code": "2000", "credit": 57.25}],
        },
        headers=ADMIN,
    )

    assert balanced.status_code == 201
    assert balanced.json()["total_amount"] == 75.25
    assert len(balanced.json()["lines"]) == 2
    assert unbalanced.status_code == 400


def test_error_mapping() -> None:
    assert to_http_exception(RecordNotFoundError("gone")).status_code == 404
    upstream = to_http_exception(UpstreamApiError("gmail", 429, "slow down"))
    assert upstream.status_code == 502
    assert upstream.detail["service"] == "gmail"
    assert to_http_exception(RuntimeError("boom")).status_code == 500


@pytest.fixture()
def filing_client(session_factory, tmp_path):
    orchestrator = _LoopTrackingOrchestrator(
        session_factory,
        document_processor=DocumentProcessor(),
        document_agent=DocumentClassificationAgent(llm=None),
        rule_engine=FilingRuleEngine(),
        destinations=build_destination_registry(tmp_path),
    )
    orchestrator.ran_on_event_loop = []

    app = FastAPI()
    app.state.orchestrator = orchestrator
    app.include_router(build_email_router(session_factory, orchestrator, max_attachment_size_bytes=1024 * 1024))
    app.include_router(
        build_filing_router(
            session_factory,
            orchestrator,
            InboxScanner(session_factory, orchestrator),
            SenderRuleService(session_factory),
        )
    )
    app.dependency_overrides[get_settings] = lambda: Settings(admin_api_key="admin-key", webhook_secret="hook-key")
    return TestClient(app)


def _post_invoice_email(filing_client) -> dict:
    response = filing_client.post(
        "/email-webhook",
        data={"sender": "billing@acme.example", "subject": "Invoice # 1042", "body": "Please see attached."},
        files=[("attachments", ("invoice.txt", b"Invoice # 1042\nAmount Due: $80.00\n", "text/plain"))],
        headers={"X-API-KEY": "hook-key", "X-Idempotency-Key": "mail-1"},
    )
    assert response.status_code == 200
    return response.json()


def test_email_webhook_runs_filing_off_the_event_loop(filing_client) -> None:
    intake = _post_invoice_email(filing_client)

    assert intake["status"] == "processed"
    assert intake["attachments_skipped"] == 1
    assert filing_client.app.state.orchestrator.ran_on_event_loop == [False]


def test_manual_file_endpoint(filing_client, tmp_path) -> None:
    intake = _post_invoice_email(filing_client)
    filing_id = intake["filing_ids"][0]

    filed = filing_client.post(
        f"/filings/{filing_id}/manual-file",
        json={"destination_type": "data_room", "destination_path": "/Manual/", "actor": "ops@example.com"},
        headers=ADMIN,
    )
    again = filing_client.post(
        f"/filings/{filing_id}/manual-file",
        json={"destination_type": "data_room", "destination_path": "/Manual/", "actor": "ops@example.com"},
        headers=ADMIN,
    )
    bad_destination = filing_client.post(
        f"/filings/{filing_id}/manual-file",
        json={"destination_type": "ftp", "destination_path": "/Manual/", "actor": "ops@example.com"},
        headers=ADMIN,
    )
    missing = filing_client.post(
        "/filings/999/manual-file",
        json={"destination_type": "data_room", "destination_path": "/Manual/", "actor": "ops@example.com"},
        headers=ADMIN,
    )

    assert filed.status_code == 200
    assert filed.json()["status"] == "filed"
    assert filed.json()["filed_by"] == "ops@example.com"
    assert filed.json()["auto_filed"] is False
    assert (tmp_path / "data_room" / "Manual" / "invoice.txt").read_bytes().startswith(b"Invoice # 1042")
    assert again.status_code == 409
    assert bad_destination.status_code == 400
    assert missing.status_code == 404
