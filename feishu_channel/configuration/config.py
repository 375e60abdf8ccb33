"""Configuration management for the Feishu channel."""

from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ACCOUNT_ID = "default"


class FeishuAccountConfig(BaseModel):
    """Resolved configuration of one Feishu/Lark bot account."""

    account_id: str = DEFAULT_ACCOUNT_ID
    app_id: str = ""
    app_secret: str = ""
    encrypt_key: str | None = None
    verification_token: str | None = None
    domain: Literal["feishu", "lark"] = "feishu"
    connection_mode: Literal["websocket", "webhook", "auto"] = "auto"
    workspace: str | None = None
    auto_acknowledge: bool = True
    enabled: bool = True
    agent_id: str | None = None
    sync_identity_file: bool = False

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.app_secret)

    @property
    def use_webhook(self) -> bool:
        """Lark (international) has no long connection, so it defaults to webhook."""
        if self.connection_mode == "auto":
            return self.domain == "lark"
        return self.connection_mode == "webhook"

    @property
    def api_base_url(self) -> str:
        if self.domain == "lark":
            return "https://open.larksuite.com"
        return "https://open.feishu.cn"


class Settings(BaseSettings):
    """Application settings."""

    # API Settings
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Feishu Accounts
    # JSON object of account_id -> account fields. When empty, a single
    # "default" account is built from the FEISHU_* variables below.
    feishu_accounts: dict[str, dict[str, Any]] = Field(
        default_factory=dict, alias="FEISHU_ACCOUNTS"
    )
    feishu_app_id: str | None = Field(default=None, alias="FEISHU_APP_ID")
    feishu_app_secret: str | None = Field(default=None, alias="FEISHU_APP_SECRET")
    feishu_encrypt_key: str | None = Field(default=None, alias="FEISHU_ENCRYPT_KEY")
    feishu_verification_token: str | None = Field(
        default=None, alias="FEISHU_VERIFICATION_TOKEN"
    )
    feishu_domain: Literal["feishu", "lark"] = Field(default="feishu", alias="FEISHU_DOMAIN")
    feishu_connection_mode: Literal["websocket", "webhook", "auto"] = Field(
        default="auto", alias="FEISHU_CONNECTION_MODE"
    )
    feishu_workspace: str | None = Field(default=None, alias="FEISHU_WORKSPACE")
    feishu_auto_acknowledge: bool = Field(default=True, alias="FEISHU_AUTO_ACKNOWLEDGE")

    # Inbound Filter Settings
    dedup_ttl_seconds: int = Field(default=60, alias="DEDUP_TTL_SECONDS")
    dedup_expire_minutes: int = Field(default=30, alias="DEDUP_EXPIRE_MINUTES")
    dedup_cleanup_threshold: int = Field(default=100, alias="DEDUP_CLEANUP_THRESHOLD")

    # Reply Delivery Settings
    reply_flush_delay_ms: int = Field(default=2000, alias="REPLY_FLUSH_DELAY_MS")
    reply_max_buffer_ms: int = Field(default=8000, alias="REPLY_MAX_BUFFER_MS")
    text_chunk_limit: int = Field(default=4000, alias="TEXT_CHUNK_LIMIT")

    # Bot Forwarding Settings
    forward_max_depth: int = Field(default=30, alias="FORWARD_MAX_DEPTH")
    forward_workers: int = Field(default=4, alias="FORWARD_WORKERS")
    shutdown_timeout_seconds: float = Field(default=30.0, alias="SHUTDOWN_TIMEOUT_SECONDS")

    # Acknowledgement Settings
    ack_timeout_seconds: float = Field(default=300.0, alias="ACK_TIMEOUT_SECONDS")
    ack_emoji: str = Field(default="Salute", alias="ACK_EMOJI")

    # External Tool Settings
    probe_timeout_seconds: float = Field(default=10.0, alias="PROBE_TIMEOUT_SECONDS")
    transcribe_command: str = Field(
        default="python3 /usr/local/bin/stt.py", alias="TRANSCRIBE_COMMAND"
    )
    transcribe_timeout_seconds: float = Field(default=30.0, alias="TRANSCRIBE_TIMEOUT_SECONDS")

    # Agent Runtime Settings
    agent_dispatch_url: str = Field(
        default="http://localhost:8080/v1/dispatch", alias="AGENT_DISPATCH_URL"
    )
    agent_dispatch_timeout_seconds: float = Field(
        default=300.0, alias="AGENT_DISPATCH_TIMEOUT_SECONDS"
    )
    agent_api_key: str | None = Field(default=None, alias="AGENT_API_KEY")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str | None) -> str:
        """Normalize log level value from environment."""
        if value is None:
            return "INFO"
        normalized = str(value).strip().upper()
        if normalized in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return normalized
        raise ValueError("LOG_LEVEL must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL")

    def list_account_ids(self) -> list[str]:
        """List configured account ids; a bare single-account setup yields ["default"]."""
        if self.feishu_accounts:
            return list(self.feishu_accounts.keys())
        if self.feishu_app_id:
            return [DEFAULT_ACCOUNT_ID]
        return []

    def resolve_account(self, account_id: str | None = None) -> FeishuAccountConfig | None:
        """Resolve one account's configuration.

        Returns None when the account is unknown.
        """
        account_id = account_id or DEFAULT_ACCOUNT_ID
        if self.feishu_accounts:
            raw = self.feishu_accounts.get(account_id)
            if raw is None:
                return None
            return FeishuAccountConfig(**{**raw, "account_id": account_id})

        if account_id != DEFAULT_ACCOUNT_ID or not self.feishu_app_id:
            return None
        return FeishuAccountConfig(
            account_id=DEFAULT_ACCOUNT_ID,
            app_id=self.feishu_app_id,
            app_secret=self.feishu_app_secret or "",
            encrypt_key=self.feishu_encrypt_key,
            verification_token=self.feishu_verification_token,
            domain=self.feishu_domain,
            connection_mode=self.feishu_connection_mode,
            workspace=self.feishu_workspace,
            auto_acknowledge=self.feishu_auto_acknowledge,
        )

    def resolve_accounts(self) -> list[FeishuAccountConfig]:
        """Resolve all enabled accounts."""
        accounts = []
        for account_id in self.list_account_ids():
            account = self.resolve_account(account_id)
            if account is not None and account.enabled:
                accounts.append(account)
        return accounts


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
