from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]
RecipientField = Literal["claim.id", "recipient"]

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name, "true" if default else "false").lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


@dataclass(frozen=True)
class StoreConfig:
    """Configuration for one credential store.

    name:            collection name backing the store
    enable:          whether the store is initialized at startup
    recipient_field: which credential field identifies the recipient
    credentials:     seed credentials inserted at init (duplicates ignored)
    """

    name: str
    enable: bool = True
    recipient_field: RecipientField = "claim.id"
    credentials: tuple[dict[str, Any], ...] = field(default=(), repr=False)


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    database_url: str | None
    redis_url: str | None
    provider: StoreConfig
    consumer: StoreConfig

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"

    @property
    def stores(self) -> dict[str, StoreConfig]:
        return {"provider": self.provider, "consumer": self.consumer}


def _load_seed_file(path_raw: str) -> tuple[dict[str, Any], ...]:
    path = Path(path_raw)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ValueError(f"cannot read seed file {path_raw!r}: {e}") from None
    except json.JSONDecodeError as e:
        raise ValueError(f"seed file {path_raw!r} is not valid JSON: {e}") from None
    if not isinstance(data, list) or not all(isinstance(c, dict) for c in data):
        raise ValueError(f"seed file {path_raw!r} must hold a JSON array of objects")
    return tuple(data)


def _load_store_config(prefix: str, default_name: str) -> StoreConfig:
    name = _getenv(f"{prefix}_NAME", default_name)
    if not name:
        raise ValueError(f"{prefix}_NAME must be non-empty")

    recipient_raw = _getenv(f"{prefix}_RECIPIENT", "claim.id")
    if recipient_raw not in ("claim.id", "recipient"):
        raise ValueError(
            f"{prefix}_RECIPIENT must be claim.id|recipient (got {recipient_raw!r})"
        )

    seed_file = _getenv(f"{prefix}_SEED_FILE", "")
    credentials = _load_seed_file(seed_file) if seed_file else ()

    return StoreConfig(  # type: ignore[arg-type]
        name=name,
        enable=_getbool(f"{prefix}_ENABLE", True),
        recipient_field=recipient_raw,
        credentials=credentials,
    )


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    database_url = _getenv("DATABASE_URL", "") or None
    redis_url = _getenv("REDIS_URL", "") or None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getbool("LOG_JSON", False),
        database_url=database_url,
        redis_url=redis_url,
        provider=_load_store_config("CREDENTIALS_PROVIDER", "credentialProvider"),
        consumer=_load_store_config("CREDENTIALS_CONSUMER", "credentialConsumer"),
    )


# Module-level singleton so imports are cheap
SETTINGS = load_settings()
