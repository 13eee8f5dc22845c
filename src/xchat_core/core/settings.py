"""Application settings and configuration.

This module defines all configuration options for the xchat messaging core.
Settings are loaded from environment variables with sensible defaults.
"""

from urllib.parse import urlsplit

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    Every value can be overridden via an ``XCHAT_*`` environment variable or
    a ``.env`` file in the working directory.
    """

    app_name: str = Field(default="xchat", alias="XCHAT_APP_NAME")
    log_level: str = Field(default="INFO", alias="XCHAT_LOG_LEVEL")

    # SQL relay (SqlRowStore)
    relay_database_url: str = Field(
        default="sqlite:///./xchat_relay.db",
        alias="XCHAT_RELAY_DATABASE_URL",
    )
    sql_debug: bool = Field(default=False, alias="XCHAT_SQL_DEBUG")

    # HTTP relay (RestRowStore)
    relay_url: str = Field(default="", alias="XCHAT_RELAY_URL")
    relay_api_key: str | None = Field(default=None, alias="XCHAT_RELAY_API_KEY")
    relay_table: str = Field(default="messages", alias="XCHAT_RELAY_TABLE")
    relay_payload_column: str = Field(default="data", alias="XCHAT_RELAY_PAYLOAD_COLUMN")
    relay_id_column: str = Field(default="id", alias="XCHAT_RELAY_ID_COLUMN")
    http_timeout_seconds: float = Field(default=10.0, alias="XCHAT_HTTP_TIMEOUT_SECONDS")

    # Delivery cadence
    poll_interval_seconds: float = Field(
        default=30.0,
        ge=1.0,
        le=3600.0,
        alias="XCHAT_POLL_INTERVAL_SECONDS",
    )
    push_backup_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        alias="XCHAT_PUSH_BACKUP_INTERVAL_SECONDS",
    )

    # Chunked transfer
    chunk_size: int = Field(default=750_000, gt=0, alias="XCHAT_CHUNK_SIZE")
    chunk_timeout_seconds: float = Field(default=300.0, gt=0, alias="XCHAT_CHUNK_TIMEOUT_SECONDS")
    chunk_insert_batch_size: int = Field(default=10, gt=0, alias="XCHAT_CHUNK_INSERT_BATCH_SIZE")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    def relay_url_parts(self) -> tuple[str, str]:
        """Return ``(base_url, table)`` for the HTTP relay.

        A pasted link such as ``https://abc.supabase.co/messages`` is split
        into its origin and the first path segment; the segment only fills in
        the table name when none was configured explicitly.

        Returns:
            Base URL without a path, and the table name to use
        """
        parsed = urlsplit(self.relay_url)
        if not parsed.scheme or not parsed.netloc:
            return self.relay_url.rstrip("/"), self.relay_table

        base = f"{parsed.scheme}://{parsed.netloc}"
        segments = [part for part in parsed.path.split("/") if part]
        table = self.relay_table
        if segments and "relay_table" not in self.model_fields_set:
            table = segments[0]
        return base, table


settings = Settings()
