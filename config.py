from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Storage
    UPLOAD_DIR: str = "./uploads"
    CACHE_DIR: str = "./cache"

    # Auth / public URLs
    API_TOKEN: str = "change-me"
    PUBLIC_BASE_URL: str = "http://localhost:8080"
    PORT: int = 8080

    # In-memory path cache (seconds)
    CACHE_DEFAULT_TTL: float = 300
    CACHE_SWEEP_INTERVAL: float = 600

    # Images
    MAX_UPLOAD_BYTES: int = 8 << 20
    DEFAULT_RESIZE: int = 300
    MAX_RESIZE_DIMENSION: int = 4096

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


settings = Settings()
