from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_WEAK_DATABASE_CREDENTIALS = ("postgres:postgres@", "root:root@", "admin:admin@")


class Settings(BaseSettings):
    app_name: str = "Opsflow Decision Engine"
    environment: str = "development"
    log_level: str = "INFO"

    # Required integration/security settings.
    database_url: str = Field(default="", alias="DATABASE_URL")
    webhook_secret: str = Field(default="", alias="WEBHOOK_SECRET")
    admin_api_key: str = Field(default="", alias="ADMIN_API_KEY")
    allowed_origins_raw: str = Field(default="", alias="ALLOWED_ORIGINS")

    # LLM collaborators are optional; heuristics run without them.
    ai_enabled: bool = Field(default=False, alias="AI_ENABLED")
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    classification_model: str = Field(default="", alias="CLASSIFICATION_MODEL")
    quote_scoring_model: str = Field(default="", alias="QUOTE_SCORING_MODEL")
    llm_timeout_seconds: int = 60
    llm_max_retries: int = Field(default=3, alias="LLM_MAX_RETRIES")
    classification_max_input_chars: int = 4000

    # Filing pipeline.
    filing_root: Path = Field(default=Path("./filed_documents"), alias="FILING_ROOT")
    default_destination_type: str = Field(default="", alias="DEFAULT_DESTINATION_TYPE")
    default_path_template: str = Field(
        default="/{documentType}/{month}/", alias="DEFAULT_PATH_TEMPLATE"
    )
    scan_max_emails: int = Field(default=50, alias="SCAN_MAX_EMAILS")
    scan_query: str = "has:attachment newer_than:7d"
    filter_spam: bool = Field(default=True, alias="FILTER_SPAM")
    filter_solicitations: bool = Field(default=True, alias="FILTER_SOLICITATIONS")
    filter_newsletters: bool = Field(default=False, alias="FILTER_NEWSLETTERS")
    max_attachment_size_bytes: int = Field(default=10485760, alias="MAX_ATTACHMENT_SIZE_BYTES")
    sender_pattern_max_length: int = Field(default=256, alias="SENDER_PATTERN_MAX_LENGTH")
    filing_claim_lease_seconds: int = Field(default=900, alias="FILING_CLAIM_LEASE_SECONDS")

    # Approvals.
    auto_approve_threshold: float = Field(default=500.0, alias="AUTO_APPROVE_THRESHOLD")
    escalation_minutes: int = Field(default=60, alias="ESCALATION_MINUTES")

    # OAuth state tokens.
    oauth_state_ttl_seconds: int = Field(default=600, alias="OAUTH_STATE_TTL_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def resolved_database_url(self) -> str:
        return self.database_url.strip()

    @property
    def resolved_quote_scoring_model(self) -> str:
        if self.quote_scoring_model.strip():
            return self.quote_scoring_model.strip()
        return self.classification_model.strip()

    @property
    def resolved_default_destination_type(self) -> str | None:
        value = self.default_destination_type.strip()
        return value or None

    @property
    def allowed_origins(self) -> list[str]:
        return [
            origin.strip()
            for origin in self.allowed_origins_raw.split(",")
            if origin.strip()
        ]

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    def missing_required_env_vars(self) -> list[str]:
        missing: list[str] = []

        checks = {
            "DATABASE_URL": self.database_url,
            "WEBHOOK_SECRET": self.webhook_secret,
            "ALLOWED_ORIGINS": self.allowed_origins_raw,
        }
        if self.ai_enabled:
            checks["ANTHROPIC_API_KEY"] = self.anthropic_api_key
            checks["CLASSIFICATION_MODEL"] = self.classification_model

        for key, value in checks.items():
            if not str(value).strip():
                missing.append(key)

        return missing

    def weak_production_values(self) -> list[str]:
        if not self.is_production:
            return []

        problems: list[str] = []
        if any(marker in self.database_url for marker in _WEAK_DATABASE_CREDENTIALS):
            problems.append("DATABASE_URL uses default credentials")
        admin_key = self.admin_api_key.strip()
        if admin_key and admin_key == self.webhook_secret.strip():
            problems.append("ADMIN_API_KEY must differ from WEBHOOK_SECRET")
        return problems

    def validate_required(self) -> None:
        missing = self.missing_required_env_vars()
        if missing:
            joined = ", ".join(sorted(missing))
            raise ValueError(f"Missing required environment variables: {joined}")

        problems = self.weak_production_values()
        if problems:
            raise ValueError("Insecure production configuration: " + "; ".join(problems))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
