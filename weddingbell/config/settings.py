"""
Configuration settings for the WeddingBell notification service.

Settings are grouped into nested sections and loaded from environment
variables and an optional ``.env`` file. Nested values use the ``__``
delimiter, for example ``QUEUE__BACKEND=memory`` or
``QUEUE__LANES__CRITICAL__CONCURRENCY=20``.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseModel):
    """Public-facing application identity used by templates."""
    name: str = Field(
        default="Attitudes.vip",
        description="Application name shown in notifications"
    )
    url: str = Field(
        default="https://attitudes.vip",
        description="Base URL used to build links in templates"
    )
    support_email: str = Field(
        default="support@attitudes.vip",
        description="Support address shown in email footers"
    )
    default_language: str = Field(
        default="fr",
        description="Language used when a template is missing for the requested one"
    )
    supported_languages: List[str] = Field(
        default=["fr", "en"],
        description="Languages with localized date formatting"
    )


class DatabaseSettings(BaseModel):
    """Database configuration settings."""
    mongodb_url: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection URL"
    )
    mongodb_database: str = Field(
        default="weddingbell",
        description="MongoDB database name"
    )
    max_pool_size: int = Field(
        default=50,
        description="Maximum MongoDB connection pool size"
    )
    server_selection_timeout_ms: int = Field(
        default=5000,
        description="MongoDB server selection timeout"
    )


class RedisSettings(BaseModel):
    """Redis connection used by the queue, pub/sub bus and cache."""
    url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )
    key_prefix: str = Field(
        default="weddingbell",
        description="Prefix for every Redis key and channel"
    )


class StorageSettings(BaseModel):
    """Repository backend selection."""
    backend: str = Field(
        default="mongodb",
        description="Repository backend (mongodb/memory)"
    )


class LaneSettings(BaseModel):
    """Worker settings for a single priority lane."""
    poll_interval: float = Field(
        default=1.0,
        description="Seconds between polls when the lane is empty"
    )
    concurrency: int = Field(
        default=1,
        description="Maximum jobs processed at once in this lane"
    )


def _default_lanes() -> Dict[str, LaneSettings]:
    return {
        "critical": LaneSettings(poll_interval=0.1, concurrency=10),
        "high": LaneSettings(poll_interval=0.5, concurrency=5),
        "medium": LaneSettings(poll_interval=1.0, concurrency=3),
        "low": LaneSettings(poll_interval=5.0, concurrency=1),
    }


class QueueSettings(BaseModel):
    """Priority queue configuration."""
    backend: str = Field(
        default="redis",
        description="Queue backend (redis/memory)"
    )
    lanes: Dict[str, LaneSettings] = Field(
        default_factory=_default_lanes,
        description="Lane name to worker settings"
    )
    visibility_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds a dequeued job stays leased before another worker may take it"
    )


class PubSubSettings(BaseModel):
    """Cross-process fan-out bus configuration."""
    backend: str = Field(
        default="redis",
        description="Pub/sub backend (redis/memory)"
    )


class CacheSettings(BaseModel):
    """Preference and rule cache configuration."""
    backend: str = Field(
        default="memory",
        description="Cache backend (memory/redis)"
    )
    maxsize: int = Field(
        default=10000,
        description="Maximum entries held by the in-memory cache"
    )


class RetryPolicy(BaseModel):
    """Per-channel retry policy."""
    max_retries: int = Field(default=3, description="Retries after the first attempt")
    retry_delay: float = Field(default=5.0, description="Base delay between attempts in seconds")
    max_retry_delay: float = Field(default=60.0, description="Upper bound for exponential delay")
    backoff: str = Field(default="exponential", description="Backoff strategy (fixed/exponential)")
    jitter: bool = Field(default=True, description="Add random jitter to retry delays")


def _default_retry_policies() -> Dict[str, RetryPolicy]:
    return {
        "realtime": RetryPolicy(max_retries=0, retry_delay=0.5),
        "push": RetryPolicy(max_retries=3, retry_delay=1.0),
        "email": RetryPolicy(max_retries=3, retry_delay=5.0),
        "sms": RetryPolicy(max_retries=3, retry_delay=5.0),
    }


class ChannelSettings(BaseModel):
    """Channel sender configuration."""
    enabled: List[str] = Field(
        default=["realtime", "push", "email", "sms"],
        description="Channels with a registered sender"
    )
    retry: Dict[str, RetryPolicy] = Field(
        default_factory=_default_retry_policies,
        description="Retry policy per channel"
    )

    def retry_policy(self, channel: str) -> RetryPolicy:
        return self.retry.get(channel, RetryPolicy())


class EmailSettings(BaseModel):
    """SMTP configuration."""
    smtp_host: str = Field(default="localhost", description="SMTP server host")
    smtp_port: int = Field(default=587, description="SMTP server port")
    smtp_user: Optional[str] = Field(default=None, description="SMTP username")
    smtp_password: Optional[str] = Field(default=None, description="SMTP password")
    use_tls: bool = Field(default=True, description="Upgrade the connection with STARTTLS")
    timeout_seconds: float = Field(default=30.0, description="SMTP socket timeout")
    from_address: str = Field(default="notifications@attitudes.vip", description="Sender address")
    from_name: str = Field(default="Attitudes.vip", description="Sender display name")
    batch_size: int = Field(default=50, description="Recipients per BCC batch")


class SMSSettings(BaseModel):
    """Twilio configuration."""
    account_sid: Optional[str] = Field(default=None, description="Twilio account SID")
    auth_token: Optional[str] = Field(default=None, description="Twilio auth token")
    from_number: Optional[str] = Field(default=None, description="Sending phone number")
    max_length: int = Field(default=160, gt=3, le=160, description="Maximum SMS length, one GSM segment at most")


class PushSettings(BaseModel):
    """Push delivery configuration."""
    vapid_private_key: Optional[str] = Field(
        default=None,
        description="VAPID private key, base64url encoded or a path to a PEM file"
    )
    vapid_subject: str = Field(default="mailto:noreply@attitudes.vip", description="VAPID contact claim")
    timeout_seconds: float = Field(default=10.0, description="HTTP timeout per subscription")
    default_icon: str = Field(default="/icon-192.png", description="Icon used when a template sets none")
    ttl_seconds: int = Field(default=86400, description="TTL header sent to push services")


class PresenceSettings(BaseModel):
    """WebSocket presence layer configuration."""
    heartbeat_interval: int = Field(default=30, description="Seconds between server pings")
    heartbeat_timeout: int = Field(default=60, description="Seconds of silence before a socket is closed")
    handshake_timeout: float = Field(default=10.0, description="Seconds allowed to authenticate")
    max_connections_per_user: int = Field(default=10, description="Concurrent sockets per user")
    connection_rate_limit: int = Field(default=100, description="New connections per minute per address")


class SecuritySettings(BaseModel):
    """Credential verification settings."""
    jwt_secret: str = Field(default="change-me-in-production", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Access token lifetime")


class PolicySettings(BaseModel):
    """Delivery policy switches."""
    critical_overrides_preferences: bool = Field(
        default=True,
        description="Critical notifications go to every channel regardless of opt-outs"
    )
    apply_quiet_hours: bool = Field(
        default=True,
        description="Delay non-critical notifications during a user's quiet hours"
    )


class LoggingSettings(BaseModel):
    """Logging configuration settings."""
    level: str = Field(default="INFO", description="Log level")
    use_json: bool = Field(default=False, description="Emit JSON logs instead of rich console output")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")
    enable_correlation_ids: bool = Field(default=True, description="Attach correlation IDs to logs")


class Settings(BaseSettings):
    """
    Application configuration settings.

    Loaded from environment variables, the ``.env`` file, and default values.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode enabled")
    environment: str = Field(default="development", description="Environment name")
    api_prefix: str = Field(default="/api/v1", description="Prefix for HTTP routes")
    cors_origins: List[str] = Field(default=["*"], description="Allowed CORS origins")

    app: AppSettings = Field(default_factory=AppSettings, description="Application identity")
    database: DatabaseSettings = Field(default_factory=DatabaseSettings, description="MongoDB")
    redis: RedisSettings = Field(default_factory=RedisSettings, description="Redis")
    storage: StorageSettings = Field(default_factory=StorageSettings, description="Repository backend")
    queue: QueueSettings = Field(default_factory=QueueSettings, description="Priority queue")
    pubsub: PubSubSettings = Field(default_factory=PubSubSettings, description="Pub/sub bus")
    cache: CacheSettings = Field(default_factory=CacheSettings, description="Caches")
    channels: ChannelSettings = Field(default_factory=ChannelSettings, description="Channel senders")
    email: EmailSettings = Field(default_factory=EmailSettings, description="Email channel")
    sms: SMSSettings = Field(default_factory=SMSSettings, description="SMS channel")
    push: PushSettings = Field(default_factory=PushSettings, description="Push channel")
    presence: PresenceSettings = Field(default_factory=PresenceSettings, description="Presence layer")
    security: SecuritySettings = Field(default_factory=SecuritySettings, description="Security")
    policy: PolicySettings = Field(default_factory=PolicySettings, description="Delivery policy")
    logging: LoggingSettings = Field(default_factory=LoggingSettings, description="Logging")

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary for JSON serialization."""
        return self.model_dump(exclude_unset=False, exclude_none=False)

    def validate_configuration(self) -> Dict[str, List[str]]:
        """
        Validate the entire configuration.

        Returns:
            Dictionary with validation errors by section
        """
        errors: Dict[str, List[str]] = {}

        url_fields = [
            ("app.url", self.app.url),
            ("database.mongodb_url", self.database.mongodb_url),
            ("redis.url", self.redis.url),
        ]
        for field_path, url in url_fields:
            if not self._is_valid_url(url):
                errors.setdefault(field_path.split('.')[0], []).append(
                    f"Invalid URL: {field_path} = {url}"
                )

        for lane, lane_settings in self.queue.lanes.items():
            if lane_settings.concurrency <= 0:
                errors.setdefault("queue", []).append(
                    f"Must be positive integer: queue.lanes.{lane}.concurrency = {lane_settings.concurrency}"
                )
            if lane_settings.poll_interval <= 0:
                errors.setdefault("queue", []).append(
                    f"Must be positive: queue.lanes.{lane}.poll_interval = {lane_settings.poll_interval}"
                )

        backend_choices = [
            ("storage.backend", self.storage.backend, {"mongodb", "memory"}),
            ("queue.backend", self.queue.backend, {"redis", "memory"}),
            ("pubsub.backend", self.pubsub.backend, {"redis", "memory"}),
            ("cache.backend", self.cache.backend, {"redis", "memory"}),
        ]
        for field_path, value, choices in backend_choices:
            if value not in choices:
                errors.setdefault(field_path.split('.')[0], []).append(
                    f"Unsupported backend: {field_path} = {value}"
                )

        if self.email.batch_size <= 0:
            errors.setdefault("email", []).append(
                f"Must be positive integer: email.batch_size = {self.email.batch_size}"
            )

        return errors

    def _is_valid_url(self, url: str) -> bool:
        """Check if URL is valid."""
        try:
            result = urlparse(url)
        except ValueError:
            return False
        return all([result.scheme, result.netloc])


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
