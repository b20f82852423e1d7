import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

PLACEHOLDER_VALUES = {"", "your-api-key-here", "your-email@gmail.com", "your-app-password"}


class Settings(BaseModel, frozen=True):
    port: int = 4000
    jwt_secret: str = "dev_secret_change_me"
    token_ttl_days: int = 7
    reset_token_ttl_minutes: int = 15
    otp_ttl_minutes: int = 10
    bcrypt_rounds: int = 10
    store_backend: str = "sqlite"  # memory | json | sqlite
    database_path: str = "taskmate.db"
    json_store_path: str = "taskmate.json"
    cors_origins: list[str] = ["*"]
    email_host: str = "smtp.gmail.com"
    email_port: int = 587
    email_user: Optional[str] = None
    email_pass: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-5"
    log_level: str = "INFO"

    @property
    def email_configured(self) -> bool:
        return _configured(self.email_user) and _configured(self.email_pass)

    @property
    def anthropic_configured(self) -> bool:
        return _configured(self.anthropic_api_key)


def _configured(value: Optional[str]) -> bool:
    return value is not None and value not in PLACEHOLDER_VALUES


def load_settings() -> Settings:
    """Read settings from the environment (and .env if present)."""
    load_dotenv()
    env = os.environ
    defaults = Settings()
    origins = env.get("CORS_ORIGINS")
    return Settings(
        port=int(env.get("PORT", defaults.port)),
        jwt_secret=env.get("JWT_SECRET", defaults.jwt_secret),
        token_ttl_days=int(env.get("TOKEN_TTL_DAYS", defaults.token_ttl_days)),
        reset_token_ttl_minutes=int(env.get("RESET_TOKEN_TTL_MINUTES", defaults.reset_token_ttl_minutes)),
        otp_ttl_minutes=int(env.get("OTP_TTL_MINUTES", defaults.otp_ttl_minutes)),
        bcrypt_rounds=max(10, int(env.get("BCRYPT_ROUNDS", defaults.bcrypt_rounds))),
        store_backend=env.get("STORE_BACKEND", defaults.store_backend).lower(),
        database_path=env.get("DATABASE_PATH", defaults.database_path),
        json_store_path=env.get("JSON_STORE_PATH", defaults.json_store_path),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()] if origins else defaults.cors_origins,
        email_host=env.get("EMAIL_HOST", defaults.email_host),
        email_port=int(env.get("EMAIL_PORT", defaults.email_port)),
        email_user=env.get("EMAIL_USER"),
        email_pass=env.get("EMAIL_PASS"),
        anthropic_api_key=env.get("ANTHROPIC_API_KEY"),
        anthropic_model=env.get("ANTHROPIC_MODEL", defaults.anthropic_model),
        log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
    )
