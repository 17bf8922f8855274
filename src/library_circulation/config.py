"""Configuration management for the Library Circulation server.

Two layers of configuration exist:
1. Process configuration (this module) - server metadata, database location,
   transaction retry behaviour and logging, loaded from the environment.
2. Circulation policy - the singleton LoanConfiguration record stored in the
   database. The ``policy_*`` fields below only seed that record the first
   time it is accessed; afterwards it is changed through the
   update_loan_configuration tool.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseSettings):
    """Circulation server configuration.

    Values are read from ``LIBRARY_CIRCULATION_*`` environment variables or a
    local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="LIBRARY_CIRCULATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Server Metadata ===

    server_name: str = Field(
        default="library-circulation",
        description="MCP server name used in protocol handshake",
        pattern=r"^[a-z0-9-]+$",
    )

    server_version: str = Field(
        default="0.1.0",
        description="Server version for capability negotiation",
        pattern=r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.]+)?$",
    )

    transport: str = Field(
        default="stdio",
        description="Primary transport mechanism",
        pattern=r"^(stdio|streamable_http)$",
    )

    http_host: str = Field(
        default="127.0.0.1",
        description="HTTP server host for Streamable HTTP transport",
    )

    http_port: int = Field(
        default=8080,
        description="HTTP server port for Streamable HTTP transport",
        ge=1024,
        le=65535,
    )

    # === Database Configuration ===

    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy database URL; overrides database_path when set",
    )

    database_path: Path = Field(
        default=Path("data/circulation.db"),
        description="SQLite database file path",
    )

    transaction_retries: int = Field(
        default=3,
        description="Retries for a unit of work aborted by lock contention",
        ge=0,
        le=10,
    )

    retry_backoff_seconds: float = Field(
        default=0.05,
        description="Base delay between transaction retries (doubled per attempt)",
        ge=0.0,
        le=5.0,
    )

    # === Logging ===

    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR)$",
    )

    # === Circulation Policy Seed ===

    policy_default_loan_days: int = Field(default=14, ge=1)
    policy_max_active_loans: int = Field(default=5, ge=1)
    policy_max_renewals: int = Field(default=2, ge=0)
    policy_grace_period_days: int = Field(default=0, ge=0)
    policy_daily_fine_amount: float = Field(default=1.0, ge=0.0)
    policy_allow_loans_with_fines: bool = Field(default=False)
    policy_reservation_hold_days: int = Field(default=7, ge=1)

    @field_validator("server_name")
    @classmethod
    def validate_server_name(cls, v: str) -> str:
        """Server names are shown to MCP clients; keep them short and readable."""
        if len(v) < 3:
            raise ValueError("Server name must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Server name must not exceed 50 characters")
        return v

    @property
    def is_development(self) -> bool:
        return self.debug or self.log_level == "DEBUG"

    @property
    def server_info(self) -> dict[str, str]:
        return {
            "name": self.server_name,
            "version": self.server_version,
            "transport": self.transport,
        }

    @property
    def policy_defaults(self) -> dict[str, int | float | bool]:
        """Initial values for the LoanConfiguration record."""
        return {
            "default_loan_days": self.policy_default_loan_days,
            "max_active_loans": self.policy_max_active_loans,
            "max_renewals": self.policy_max_renewals,
            "grace_period_days": self.policy_grace_period_days,
            "daily_fine_amount": self.policy_daily_fine_amount,
            "allow_loans_with_fines": self.policy_allow_loans_with_fines,
            "reservation_hold_days": self.policy_reservation_hold_days,
        }

    def get_database_url(self) -> str:
        """Get the SQLAlchemy database URL."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.database_path.absolute()}"


class _ConfigStore:
    """Internal storage for configuration singleton."""

    _instance: ServerConfig | None = None


def get_config() -> ServerConfig:
    """Get or create the global configuration instance."""
    if _ConfigStore._instance is None:  # type: ignore[reportPrivateUsage]
        _ConfigStore._instance = ServerConfig()  # type: ignore[reportPrivateUsage]
    return _ConfigStore._instance  # type: ignore[reportPrivateUsage]


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    _ConfigStore._instance = None  # type: ignore[reportPrivateUsage]
