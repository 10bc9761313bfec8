"""Configuration for the tenant bootstrapper."""

import logging
import sys
from typing import Literal

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import APIConfiguration

LogLevel = Literal["silent", "verbose"]
TopicPolicy = Literal["amend", "replace"]
PublishPolicy = Literal["auto", "publish"]


class BootstrapSettings(BaseSettings):
    """Credentials and endpoints, read from BOOTSTRAP_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="BOOTSTRAP_", env_file=".env", extra="ignore")

    api_url: str = "https://pim.crystallize.com/graphql"
    tenant_identifier: str = ""
    access_token_id: str = ""
    access_token_secret: SecretStr = SecretStr("")
    static_auth_token: str = ""
    session_id: str = ""
    timeout: float = 60.0
    log_level: str = "INFO"

    def get_api_config(self) -> APIConfiguration:
        """Build the transport configuration."""
        return APIConfiguration(
            api_url=self.api_url,
            access_token_id=self.access_token_id,
            access_token_secret=self.access_token_secret,
            static_auth_token=self.static_auth_token,
            session_id=self.session_id,
            timeout=self.timeout,
        )


class BootstrapOptions(BaseModel):
    """Per-run behaviour chosen by the caller."""

    language: str | None = Field(default=None, description="Target language override")
    item_topics: TopicPolicy = "replace"
    item_publish: PublishPolicy = "auto"
    log_level: LogLevel = "silent"
    fallback_folder_id: str | None = None


def setup_logging(level: str = "INFO") -> None:
    """Route package logging to stderr.

    stdout is reserved for the MCP stdio transport, so everything goes to
    stderr with a timestamped format.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
