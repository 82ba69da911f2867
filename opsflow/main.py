from collections.abc import Mapping
from contextlib import asynccontextmanager
from datetime import timedelta
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from opsflow.agents.document_agent import DocumentClassificationAgent
from opsflow.agents.quote_scoring_agent import QuoteScoringAgent
from opsflow.classification.sender_classifier import FilterPolicy
from opsflow.core.config import get_settings
from opsflow.db.session import get_session_factory, init_db
from opsflow.integrations.mailbox import MailboxClient
from opsflow.integrations.oauth_state import OAuthStateStore
from opsflow.integrations.shopify_webhooks import ShopifyWebhookProcessor, SqlAlchemyWebhookEventRepository
from opsflow.logging.logging_config import configure_logging
from opsflow.orchestration.filing_orchestrator import FilingOrchestrator
from opsflow.orchestration.inbox_scanner import InboxScanner
from opsflow.processing.document_processor import DocumentProcessor
from opsflow.providers import build_chat_model
from opsflow.routers.approval_router import build_approval_router
from opsflow.routers.email_router import build_email_router
from opsflow.routers.filing_router import build_filing_router
from opsflow.routers.ledger_router import router as ledger_router
from opsflow.routers.procurement_router import build_procurement_router
from opsflow.routers.webhook_router import build_webhook_router
from opsflow.routing.filing_rules import FilingRuleEngine
from opsflow.services.approval_service import ApprovalService
from opsflow.services.destination_writers import DestinationWriter, build_destination_registry
from opsflow.services.notifications import NotificationDispatcher
from opsflow.services.quote_service import QuoteService
from opsflow.services.sender_rule_service import SenderRuleService


def create_app(
    *,
    mailbox: MailboxClient | None = None,
    dispatcher: NotificationDispatcher | None = None,
    extra_writers: Mapping[str, DestinationWriter] | None = None,
) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    try:
        settings.validate_required()
    except ValueError as exc:
        logger.error(
            "Startup configuration validation failed",
            extra={"event": "startup_config_invalid", "error": str(exc)},
        )
        raise RuntimeError(str(exc)) from exc

    settings.filing_root.mkdir(parents=True, exist_ok=True)
    init_db()
    session_factory = get_session_factory()

    classification_model = None
    quote_scoring_model = None
    if settings.ai_enabled:
        classification_model = build_chat_model(settings, model_name=settings.classification_model)
        quote_scoring_model = build_chat_model(settings, model_name=settings.resolved_quote_scoring_model)

    logger.info(
        "Model providers configured",
        extra={
            "event": "provider_configured",
            "llm_provider": "anthropic" if settings.ai_enabled else "heuristic",
            "classification_model": settings.classification_model or None,
            "quote_scoring_model": settings.resolved_quote_scoring_model or None,
        },
    )

    orchestrator = FilingOrchestrator(
        session_factory,
        document_processor=DocumentProcessor(max_size_bytes=settings.max_attachment_size_bytes),
        document_agent=DocumentClassificationAgent(
            llm=classification_model,
            max_retries=settings.llm_max_retries,
            max_input_chars=settings.classification_max_input_chars,
        ),
        rule_engine=FilingRuleEngine(
            default_destination_type=settings.resolved_default_destination_type,
            default_path_template=settings.default_path_template,
            max_pattern_length=settings.sender_pattern_max_length,
        ),
        destinations=build_destination_registry(settings.filing_root, extra_writers),
        filter_policy=FilterPolicy(
            filter_spam=settings.filter_spam,
            filter_solicitations=settings.filter_solicitations,
            filter_newsletters=settings.filter_newsletters,
        ),
        max_pattern_length=settings.sender_pattern_max_length,
        claim_lease=timedelta(seconds=settings.filing_claim_lease_seconds),
    )
    scanner = InboxScanner(session_factory, orchestrator, scan_query=settings.scan_query)
    sender_rules = SenderRuleService(session_factory, max_pattern_length=settings.sender_pattern_max_length)
    quotes = QuoteService(
        session_factory,
        scoring_agent=QuoteScoringAgent(llm=quote_scoring_model, max_retries=settings.llm_max_retries),
        dispatcher=dispatcher,
    )
    approvals = ApprovalService(
        session_factory,
        auto_approve_threshold=settings.auto_approve_threshold,
        escalate_after=timedelta(minutes=settings.escalation_minutes),
    )
    oauth_states = OAuthStateStore(session_factory, ttl_seconds=settings.oauth_state_ttl_seconds)
    shopify = ShopifyWebhookProcessor(SqlAlchemyWebhookEventRepository(session_factory))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "API startup complete",
            extra={"event": "api_startup_complete", "service": settings.app_name},
        )
        logger.info(
            "CORS configured",
            extra={
                "event": "cors_configured",
                "allowed_origins": settings.allowed_origins,
            },
        )
        yield
        oauth_states.purge_expired()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(
        build_email_router(
            session_factory=session_factory,
            orchestrator=orchestrator,
            max_attachment_size_bytes=settings.max_attachment_size_bytes,
        )
    )
    app.include_router(
        build_filing_router(
            session_factory,
            orchestrator,
            scanner,
            sender_rules,
            mailbox=mailbox,
            default_scan_limit=settings.scan_max_emails,
            max_pattern_length=settings.sender_pattern_max_length,
        )
    )
    app.include_router(build_procurement_router(quotes))
    app.include_router(build_approval_router(approvals))
    app.include_router(build_webhook_router(shopify, oauth_states, settings.oauth_state_ttl_seconds))
    app.include_router(ledger_router)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "service": settings.app_name}

    return app


app = create_app()
