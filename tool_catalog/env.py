import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _resolve_env_file() -> Path | None:
    current_dir = Path(__file__).resolve().parent
    candidates = [
        current_dir / ".env",
        current_dir.parent / ".env",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).strip().lower() == "true"


@dataclass(frozen=True)
class CatalogEnv:
    env_file: Path | None
    database_url: str
    db_echo: bool
    log_level: str
    mcp_transport: str
    mcp_request_timeout_sec: float
    mcp_client_name: str
    mcp_client_version: str
    api_host: str
    api_port: int


def load_catalog_env() -> CatalogEnv:
    env_file = _resolve_env_file()
    # Real environment variables win over the dotenv file.
    if env_file is not None:
        load_dotenv(env_file, override=False)

    return CatalogEnv(
        env_file=env_file,
        database_url=os.getenv("DATABASE_URL", "sqlite:///./tool_catalog.db").strip(),
        db_echo=_env_bool("DB_ECHO", "false"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip(),
        mcp_transport=os.getenv("MCP_TRANSPORT", "http").strip().lower(),
        mcp_request_timeout_sec=float(os.getenv("MCP_REQUEST_TIMEOUT_SEC", "30").strip()),
        mcp_client_name=os.getenv("MCP_CLIENT_NAME", "mcp-tool-catalog").strip(),
        mcp_client_version=os.getenv("MCP_CLIENT_VERSION", "1.0.0").strip(),
        api_host=os.getenv("API_HOST", "0.0.0.0").strip(),
        api_port=int(os.getenv("API_PORT", "8091").strip()),
    )


ENV = load_catalog_env()
