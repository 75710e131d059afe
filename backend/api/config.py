"""Service configuration, read from the environment (and ``.env``)."""

from pathlib import Path

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "data"

PROVIDERS = ("gemini", "ollama")


class ConfigurationError(Exception):
    """Raised at startup when the settings cannot produce a working service."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", protected_namespaces=()
    )

    # Model provider
    model_provider: str = "gemini"
    gemini_api_key: str | None = None
    model_name: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "gemma3:12b"
    structured_output: bool = True

    # Upload limits / preprocessing
    max_upload_bytes: int = Field(10 * 1024 * 1024, gt=0)
    max_image_dimension_px: int = Field(2000, gt=0)
    max_image_pixels: int = Field(250_000_000, gt=0)
    jpeg_quality: int = Field(90, ge=1, le=95)
    allowed_mime_types: str = "image/jpeg,image/jpg,image/png,image/webp"

    # Timeouts / retries
    remote_timeout_s: float = Field(90.0, gt=0)
    request_timeout_s: float = Field(180.0, gt=0)
    max_retries: int = Field(3, ge=0)
    retry_base_delay_s: float = Field(1.0, ge=0)

    # Storage
    uploads_dir: str | None = None
    history_db_path: str = str(DATA_DIR / "history.db")

    # HTTP
    allow_origins: str = "http://localhost:3000,http://localhost:5173"
    debug: bool = False

    @property
    def mime_types(self) -> frozenset[str]:
        return frozenset(_split(self.allowed_mime_types))

    @property
    def origins(self) -> list[str]:
        return _split(self.allow_origins)


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def read_settings(**overrides) -> Settings:
    """Parse Settings, reporting bad values as ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def load_settings(**overrides) -> Settings:
    """Build and check Settings; raise ConfigurationError instead of starting half-configured."""
    settings = read_settings(**overrides)

    provider = settings.model_provider.lower()
    if provider not in PROVIDERS:
        raise ConfigurationError(
            f"Unknown MODEL_PROVIDER '{settings.model_provider}' (expected one of: {', '.join(PROVIDERS)})"
        )
    if provider == "gemini" and not settings.gemini_api_key:
        raise ConfigurationError("GEMINI_API_KEY is required when MODEL_PROVIDER=gemini")
    if not settings.mime_types:
        raise ConfigurationError("ALLOWED_MIME_TYPES must list at least one media type")
    return settings.model_copy(update={"model_provider": provider})
