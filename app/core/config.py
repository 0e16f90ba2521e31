from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global configuration for environment variables."""

    APP_NAME: str = "Translator LLM Gateway"

    # Server config
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    DIST_DIR: str = "dist"
    CORS_ORIGINS: str = Field(default="*")
    LOG_LEVEL: str = "INFO"

    # Provider selection: "ollama" or "gemini"
    LLM_PROVIDER: str = "ollama"

    # Ollama
    OLLAMA_HOST: str = "localhost"
    OLLAMA_PORT: int = 11434
    OLLAMA_PASSTHROUGH: bool = False

    # Gemini
    GEMINI_API_KEY: str | None = None
    GEMINI_MODEL: str = "gemini-2.0-flash"
    GEMINI_ENDPOINT: str = "https://generativelanguage.googleapis.com"

    # Backend timeouts
    CONNECT_TIMEOUT_SECONDS: float = 10.0
    REQUEST_TIMEOUT_SECONDS: float = 300.0

    # Intercept every POST /api/* call, log it and answer 500
    TEST_MODE: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def ollama_base_url(self) -> str:
        return f"http://{self.OLLAMA_HOST}:{self.OLLAMA_PORT}"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


settings = Settings()
