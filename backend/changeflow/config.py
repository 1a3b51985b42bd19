"""
Configuration management for the changeflow engine.

All configuration is done via environment variables; the only file read
is the tenant mapping document named by TENANTS_FILE. This module
provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Document each new variable in the Attributes of its section
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ROLE_ARN_VARIABLES = (
    "ENGINE_ROLE_ARN",
    "BACKEND_ROLE_ARN",
    "AWS_LAMBDA_ROLE_ARN",
    "LAMBDA_EXECUTION_ROLE_ARN",
)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class EngineConfig:
    """Reconciliation engine configuration.

    Attributes:
        role_arn: IAM role the engine writes with (origin filter identity)
        principal_ids: Extra principal ids that identify the engine
        actor_id: Actor recorded on engine-written log entries
        archive_update_attempts: Conditional-write attempts per archive update
        retry_base_delay_ms: First backoff delay
        retry_max_delay_ms: Backoff cap
        call_timeout_seconds: Time budget of every external call
    """

    role_arn: str | None = None
    principal_ids: tuple[str, ...] = ()
    actor_id: str = "backend-system"
    archive_update_attempts: int = 5
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000
    call_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables."""
        role_arn = next((os.getenv(v) for v in ROLE_ARN_VARIABLES if os.getenv(v)), None)
        return cls(
            role_arn=role_arn,
            principal_ids=_env_list("ENGINE_PRINCIPAL_IDS"),
            actor_id=os.getenv("ENGINE_ACTOR_ID", "backend-system"),
            archive_update_attempts=int(os.getenv("ARCHIVE_UPDATE_ATTEMPTS", "5")),
            retry_base_delay_ms=int(os.getenv("RETRY_BASE_DELAY_MS", "1000")),
            retry_max_delay_ms=int(os.getenv("RETRY_MAX_DELAY_MS", "30000")),
            call_timeout_seconds=float(os.getenv("CALL_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for archive and trigger objects.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO / LocalStack)
        trigger_prefix: Prefix of per-tenant trigger objects
        archive_prefix: Prefix of archive objects
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: str | None = None
    trigger_prefix: str = "customers"
    archive_prefix: str = "archive"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", ""),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT_URL"),
            trigger_prefix=os.getenv("S3_TRIGGER_PREFIX", "customers"),
            archive_prefix=os.getenv("S3_ARCHIVE_PREFIX", "archive"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class QueueConfig:
    """Per-tenant queue consumption configuration.

    Attributes:
        endpoint_url: Custom SQS endpoint (LocalStack)
        wait_seconds: Long-poll duration
        max_messages: Messages per receive call (1-10)
        visibility_timeout: Seconds a received message stays hidden
    """

    endpoint_url: str | None = None
    wait_seconds: int = 20
    max_messages: int = 10
    visibility_timeout: int = 300

    @classmethod
    def from_env(cls) -> QueueConfig:
        """Load configuration from environment variables."""
        return cls(
            endpoint_url=os.getenv("QUEUE_ENDPOINT_URL"),
            wait_seconds=int(os.getenv("QUEUE_WAIT_SECONDS", "20")),
            max_messages=int(os.getenv("QUEUE_MAX_MESSAGES", "10")),
            visibility_timeout=int(os.getenv("QUEUE_VISIBILITY_TIMEOUT", "300")),
        )


@dataclass(frozen=True)
class EmailConfig:
    """Outbound email configuration.

    Attributes:
        enabled: Whether notifications are sent at all
        sender: From address
        portal_url: Base URL of the portal, used for links in emails
    """

    enabled: bool = True
    sender: str = ""
    portal_url: str = ""

    @classmethod
    def from_env(cls) -> EmailConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("EMAIL_ENABLED", "true"),
            sender=os.getenv("EMAIL_SENDER", ""),
            portal_url=os.getenv("EMAIL_PORTAL_URL", ""),
        )


@dataclass(frozen=True)
class CalendarConfig:
    """Microsoft Graph calendar configuration.

    Attributes:
        enabled: Whether meetings are scheduled
        tenant_id: Azure AD tenant
        client_id: App registration id
        client_secret: App registration secret
        organizer: Mailbox that owns created meetings
        base_url: Graph API base URL
        login_url: OAuth token endpoint base URL
        lookback_days: Window searched for an existing meeting
        default_duration_minutes: Duration when the object gives none
    """

    enabled: bool = False
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    organizer: str = ""
    base_url: str = "https://graph.microsoft.com/v1.0"
    login_url: str = "https://login.microsoftonline.com"
    lookback_days: int = 30
    default_duration_minutes: int = 60

    @classmethod
    def from_env(cls) -> CalendarConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("CALENDAR_ENABLED", "false"),
            tenant_id=os.getenv("GRAPH_TENANT_ID", ""),
            client_id=os.getenv("GRAPH_CLIENT_ID", ""),
            client_secret=os.getenv("GRAPH_CLIENT_SECRET", ""),
            organizer=os.getenv("GRAPH_ORGANIZER", ""),
            base_url=os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0"),
            login_url=os.getenv("GRAPH_LOGIN_URL", "https://login.microsoftonline.com"),
            lookback_days=int(os.getenv("GRAPH_LOOKBACK_DAYS", "30")),
            default_duration_minutes=int(os.getenv("MEETING_DEFAULT_DURATION_MINUTES", "60")),
        )


@dataclass(frozen=True)
class SurveyConfig:
    """Typeform survey configuration.

    Attributes:
        enabled: Whether surveys are created on completion
        api_token: Typeform personal access token
        base_url: Typeform API base URL
        workspace_href: Workspace to create forms in (optional)
    """

    enabled: bool = False
    api_token: str = ""
    base_url: str = "https://api.typeform.com"
    workspace_href: str | None = None

    @classmethod
    def from_env(cls) -> SurveyConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("SURVEY_ENABLED", "false"),
            api_token=os.getenv("TYPEFORM_API_TOKEN", ""),
            base_url=os.getenv("TYPEFORM_BASE_URL", "https://api.typeform.com"),
            workspace_href=os.getenv("TYPEFORM_WORKSPACE_HREF"),
        )


@dataclass(frozen=True)
class HttpConfig:
    """Operational HTTP endpoint configuration."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("HTTP_ENABLED", "true"),
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        engine: Engine identity, retries and timeouts
        s3: Archive and trigger storage
        queue: Tenant queue consumption
        email: Outbound email
        calendar: Meeting scheduling
        survey: Completion surveys
        http: Operational HTTP endpoint
        observability: Logging
        tenants_file: Path of the tenant mapping document
    """

    engine: EngineConfig = field(default_factory=EngineConfig)
    s3: S3Config = field(default_factory=S3Config)
    queue: QueueConfig = field(default_factory=QueueConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    survey: SurveyConfig = field(default_factory=SurveyConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    tenants_file: str = ""

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            engine=EngineConfig.from_env(),
            s3=S3Config.from_env(),
            queue=QueueConfig.from_env(),
            email=EmailConfig.from_env(),
            calendar=CalendarConfig.from_env(),
            survey=SurveyConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            tenants_file=os.getenv("TENANTS_FILE", ""),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: Listing every problem found.
        """
        problems = []
        if not self.s3.bucket:
            problems.append("S3_BUCKET is required")
        if not self.tenants_file:
            problems.append("TENANTS_FILE is required")
        if self.email.enabled and not self.email.sender:
            problems.append("EMAIL_SENDER is required when EMAIL_ENABLED=true")
        if self.calendar.enabled:
            for name, value in (
                ("GRAPH_TENANT_ID", self.calendar.tenant_id),
                ("GRAPH_CLIENT_ID", self.calendar.client_id),
                ("GRAPH_CLIENT_SECRET", self.calendar.client_secret),
                ("GRAPH_ORGANIZER", self.calendar.organizer),
            ):
                if not value:
                    problems.append(f"{name} is required when CALENDAR_ENABLED=true")
        if self.survey.enabled and not self.survey.api_token:
            problems.append("TYPEFORM_API_TOKEN is required when SURVEY_ENABLED=true")
        if self.engine.archive_update_attempts < 1:
            problems.append("ARCHIVE_UPDATE_ATTEMPTS must be at least 1")
        if self.engine.call_timeout_seconds <= 0:
            problems.append("CALL_TIMEOUT_SECONDS must be positive")
        if not 1 <= self.queue.max_messages <= 10:
            problems.append("QUEUE_MAX_MESSAGES must be between 1 and 10")
        if self.observability.log_format not in ("json", "text"):
            problems.append("LOG_FORMAT must be 'json' or 'text'")
        if problems:
            raise ValueError("; ".join(problems))

        if not self.engine.role_arn and not self.engine.principal_ids:
            logger.warning(
                "No engine identity configured; self-generated events will not be filtered"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "engine_role_arn": self.engine.role_arn,
                "s3_bucket": self.s3.bucket,
                "s3_region": self.s3.region,
                "trigger_prefix": self.s3.trigger_prefix,
                "archive_prefix": self.s3.archive_prefix,
                "email_enabled": self.email.enabled,
                "calendar_enabled": self.calendar.enabled,
                "calendar_organizer": self.calendar.organizer or None,
                "graph_client_secret": "***" if self.calendar.client_secret else None,
                "survey_enabled": self.survey.enabled,
                "typeform_api_token": "***" if self.survey.api_token else None,
                "tenants_file": self.tenants_file,
                "log_level": self.observability.log_level,
            },
        )
