import pytest

from api.config import ConfigurationError, Settings, load_settings
from api.main import build_capability, create_app
from models.gemini import GeminiClient
from models.ollama import OllamaClient


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate from the developer's environment and any local .env file."""
    for name in ("MODEL_PROVIDER", "GEMINI_API_KEY", "MODEL_NAME", "DEBUG", "ALLOWED_MIME_TYPES", "MAX_UPLOAD_BYTES"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults():
    settings = Settings()
    assert settings.model_provider == "gemini"
    assert settings.model_name == "gemini-2.5-flash"
    assert settings.max_upload_bytes == 10 * 1024 * 1024
    assert settings.max_image_dimension_px == 2000
    assert settings.jpeg_quality == 90
    assert settings.request_timeout_s == 180.0
    assert settings.structured_output is True
    assert settings.debug is False
    assert settings.mime_types == {"image/jpeg", "image/jpg", "image/png", "image/webp"}


def test_gemini_without_key_fails_fast():
    with pytest.raises(ConfigurationError, match="GEMINI_API_KEY"):
        load_settings()


def test_ollama_needs_no_key(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "Ollama")
    settings = load_settings()
    assert settings.model_provider == "ollama"


def test_unknown_provider_rejected(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "openai")
    with pytest.raises(ConfigurationError, match="MODEL_PROVIDER"):
        load_settings()


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "abc")
    monkeypatch.setenv("MAX_UPLOAD_BYTES", "2048")
    monkeypatch.setenv("ALLOWED_MIME_TYPES", "image/png, image/jpeg")
    monkeypatch.setenv("DEBUG", "true")
    settings = load_settings()
    assert settings.max_upload_bytes == 2048
    assert settings.mime_types == {"image/png", "image/jpeg"}
    assert settings.debug is True


def test_invalid_value_is_configuration_error(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "abc")
    monkeypatch.setenv("MAX_UPLOAD_BYTES", "-5")
    with pytest.raises(ConfigurationError):
        load_settings()


def test_dotenv_file_is_read(tmp_path):
    (tmp_path / ".env").write_text("GEMINI_API_KEY=from-dotenv\nMODEL_NAME=gemini-2.5-pro\n")
    settings = load_settings()
    assert settings.gemini_api_key == "from-dotenv"
    assert settings.model_name == "gemini-2.5-pro"


@pytest.mark.asyncio
async def test_build_capability_selects_provider():
    gemini = build_capability(load_settings(gemini_api_key="abc"))
    ollama = build_capability(load_settings(model_provider="ollama", ollama_model="llava:13b"))
    try:
        assert isinstance(gemini, GeminiClient)
        assert isinstance(ollama, OllamaClient)
        assert ollama.model == "llava:13b"
    finally:
        await gemini.close()
        await ollama.close()


def test_create_app_reports_bad_env_as_configuration_error(monkeypatch):
    monkeypatch.setenv("MAX_UPLOAD_BYTES", "abc")
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        create_app()
