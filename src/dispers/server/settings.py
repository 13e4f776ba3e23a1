"""
Conductor settings.

All values can be overridden via environment variables prefixed with
``DISPERS_`` (e.g. ``DISPERS_PORT=8080``) or a ``.env`` file.
"""
from typing import Any, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class DispersSettings(BaseSettings):
    """Settings for the Conductor and its in-process roles."""

    # Server
    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    log_level: str = Field(default="INFO", description="Log level")
    conductor_url: str = Field(
        default="http://127.0.0.1:8000",
        description="URL roles use to report back to this Conductor",
    )

    # Roles
    concept_salt: str = Field(default="", description="Secret mixed into concept hashes")
    max_workers: int = Field(default=8, ge=1, description="Threads running targets and aggregators")
    request_timeout: float = Field(default=30.0, description="Timeout of calls to remote roles (s)")

    # Remote roles; unset means the role runs inside the Conductor process
    concept_indexer_url: Optional[str] = None
    target_finder_url: Optional[str] = None
    target_url: Optional[str] = None
    data_aggregator_url: Optional[str] = None

    model_config: dict[str, Any] = {
        "env_prefix": "DISPERS_",
        "env_file": ".env",
        "extra": "ignore",
    }
