from __future__ import annotations

import re

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..modules.adaptive.domain.models import DEFAULT_SCAN_LIMIT, StorageFailurePolicy
from ..modules.adaptive.utils.schedule import load_zone


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    telegram_bot_token: Optional[str] = Field(None, alias="TELEGRAM_BOT_TOKEN")

    storage_path: Path = Field(Path("./data/adaptive.db"), alias="STORAGE_PATH")

    http_host: str = Field("0.0.0.0", alias="HTTP_HOST")
    http_port: int = Field(8080, ge=1, le=65535, alias="HTTP_PORT")
    public_base_url: str = Field("http://localhost:8080", alias="PUBLIC_BASE_URL")

    default_timezone: str = Field("UTC", alias="DEFAULT_TIMEZONE")
    adaptive_scan_limit: int = Field(
        DEFAULT_SCAN_LIMIT,
        alias="ADAPTIVE_SCAN_LIMIT",
        description="Monthly scans per link, 0 or less disables the limit",
    )
    visitor_store_timeout: float | None = Field(2.0, gt=0, alias="VISITOR_STORE_TIMEOUT")
    storage_failure_policy: StorageFailurePolicy = Field(
        StorageFailurePolicy.RAISE,
        alias="STORAGE_FAILURE_POLICY",
    )
    fingerprint_salt: str = Field("", alias="FINGERPRINT_SALT")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field("INFO", alias="LOG_LEVEL")

    # Keep the raw env value as a string to avoid dotenv provider attempting JSON decode
    admin_user_ids_raw: Optional[str] = Field(None, alias="ADMIN_USER_IDS")

    @field_validator("default_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        load_zone(value)
        return value

    @field_validator("telegram_bot_token", mode="before")
    @classmethod
    def _blank_token(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def admin_user_ids(self) -> set[int]:
        raw = self.admin_user_ids_raw
        if raw is None or raw == "":
            return set()
        # Support comma/space/semicolon separation
        tokens = [token for token in re.split(r"[\s,;]+", raw.strip()) if token]
        ids: set[int] = set()
        for token in tokens:
            try:
                ids.add(int(token))
            except ValueError:
                continue
        return ids

    def ensure_dirs(self) -> None:
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
