from functools import lru_cache
from typing import Annotated
import json
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list_value(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""
    environment: str = Field(default="development", validation_alias=AliasChoices("ENVIRONMENT", "ENV"))
    log_level: str = "INFO"

    jwt_secret: str = ""
    jwt_audience: str = ""

    default_valid_minutes: int = Field(default=24 * 60, gt=0)

    docs_enabled: bool = True
    openapi_enabled: bool = True
    expose_error_details: bool = False

    rate_limit_api_enabled: bool = False
    rate_limit_api_per_min: int = 300
    trusted_proxy_cidrs_raw: str = Field(
        default="",
        validation_alias=AliasChoices("TRUSTED_PROXY_CIDRS"),
    )

    security_headers_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("SECURITY_HEADERS_ENABLED", "SECURE_HEADERS_ENABLED"),
    )

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)
    cors_allow_methods: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "GET",
        "POST",
        "PATCH",
        "OPTIONS",
    ])
    cors_allow_headers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return _parse_list_value(value)
        return value

    @property
    def trusted_proxy_cidrs(self) -> list[str]:
        return _parse_list_value(self.trusted_proxy_cidrs_raw)

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"production", "prod"}

    def validate_required_config(self) -> list[str]:
        errors = []
        if not self.database_url:
            errors.append("DATABASE_URL is not set")
        if not self.jwt_secret:
            errors.append("JWT_SECRET is not set")
        elif self.is_production and len(self.jwt_secret) < 32:
            errors.append("JWT_SECRET must be at least 32 characters in production")
        return errors


@lru_cache
def get_settings() -> Settings:
    return Settings()
