import ipaddress
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tool_catalog.app.models.db_models import AUTH_NONE, AUTH_TYPES, SERVER_STATUSES


class ServerRegistration(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=100)
    url: str
    description: str | None = Field(default="", max_length=500)
    auth_type: str = AUTH_NONE
    auth_config: str | None = ""
    tags: str | None = Field(default="", max_length=255)

    @field_validator("url")
    @classmethod
    def validate_server_url(cls, value: str) -> str:
        url = value.strip()
        parsed = urlparse(url)

        if parsed.scheme not in {"http", "https"}:
            raise ValueError("URL must start with http:// or https://")
        if not parsed.hostname:
            raise ValueError("URL must include a valid hostname or IP address")

        hostname = parsed.hostname
        try:
            ipaddress.ip_address(hostname)
        except ValueError:
            if hostname != "localhost" and "." not in hostname:
                raise ValueError(
                    "URL host must be a valid IP, localhost, or a fully qualified domain (e.g. api.example.com)"
                )

        try:
            parsed.port
        except ValueError as exc:
            raise ValueError("URL must include a valid numeric port") from exc

        return url

    @field_validator("auth_type")
    @classmethod
    def validate_auth_type(cls, value: str) -> str:
        auth_type = (value or AUTH_NONE).strip().lower()
        if auth_type not in AUTH_TYPES:
            raise ValueError(f"auth_type must be one of: {', '.join(AUTH_TYPES)}")
        return auth_type


class ServerUpdate(ServerRegistration):
    """Full replacement of a registration; status is changed through its own route."""

    is_enabled: bool | None = None


class ServerStatusUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: str

    @field_validator("status")
    @classmethod
    def validate_status(cls, value: str) -> str:
        status = value.strip().lower()
        if status not in SERVER_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(SERVER_STATUSES)}")
        return status


class ToolUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_enabled: bool | None = None
    category: str | None = Field(default=None, max_length=50)


class ToolBatchUpdate(ToolUpdate):
    tool_ids: list[int] = Field(min_length=1)
