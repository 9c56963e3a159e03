"""
Configuration for the SafeBack SDK client.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    """Client configuration loaded from environment."""

    base_url: str = Field(default="http://localhost:8081", description="SafeBack server URL")
    tenant_id: str | None = Field(default=None, description="Default workspace (X-Tenant-ID)")
    actor: str | None = Field(default=None, description="Default actor (X-Actor)")
    timeout_seconds: float = Field(default=60.0, description="Request timeout seconds")

    model_config = {"env_prefix": "SAFEBACK_"}
