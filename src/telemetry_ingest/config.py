from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    DATABASE_URL: str = "sqlite:///./telemetry.db"
    API_TOKENS: str = ""
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8081
    MAX_BATCH_SIZE: int = 100
    ALEMBIC_INI: str = "alembic.ini"

    @property
    def database_url(self) -> str:
        return self.DATABASE_URL

    @property
    def api_tokens(self) -> frozenset[str]:
        return frozenset(t.strip() for t in self.API_TOKENS.split(",") if t.strip())


@lru_cache()
def get_settings() -> Settings:
    return Settings()
