from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE) if _ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    LOG_LEVEL: str = "INFO"
    DEFAULT_MODE: str = "balanced"

    # Gemini (structured ranking / hypothesis narration)
    LLM_ENABLED: bool = True
    GEMINI_API_KEY: str = ""
    GOOGLE_CLOUD_API_KEY: str = ""
    GCP_PROJECT_ID: str = ""
    GCP_REGION: str = "global"
    GEMINI_MODEL: str = "gemini-2.5-flash"
    GEMINI_MODEL_FALLBACKS: str = "gemini-2.0-flash-001"

    # MCP tool servers, one per evidence source
    OPENTARGETS_MCP_URL: str = "http://localhost:7010/mcp"
    REACTOME_MCP_URL: str = "http://localhost:7020/mcp"
    STRING_MCP_URL: str = "http://localhost:7030/mcp"
    CHEMBL_MCP_URL: str = "http://localhost:7040/mcp"
    BIOMCP_URL: str = "http://localhost:8000/mcp"
    # auto | prefer_mcp | fallback_only
    MCP_TRANSPORT_MODE: str = "auto"

    # Timeouts (seconds)
    TOOL_TIMEOUT_SECONDS: float = 6.0
    FALLBACK_TIMEOUT_SECONDS: float = 10.0
    PHASE_TIMEOUT_SECONDS: float = 25.0
    RANKING_TIMEOUT_SECONDS: float = 15.0
    HYPOTHESIS_TIMEOUT_SECONDS: float = 10.0

    CACHE_TTL_SECONDS: float = 300.0
    CACHE_MAX_ENTRIES: int = 500

    # /api/provider-health
    HEALTH_PROBE_TIMEOUT_SECONDS: float = 16.0
    HEALTH_SNAPSHOT_TTL_SECONDS: float = 90.0

    STRING_CONFIDENCE: float = 0.7
    STREAM_QUEUE_SIZE: int = 256

    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ORIGIN_REGEX: str = ""


settings = Settings()
