"""Application configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Mapping

from sqlalchemy.engine import URL


ENV_PREFIX = "INVESTOR_VESTING_"


def _get(env: Mapping[str, str], name: str, default: str | None = None) -> str | None:
    value = env.get(f"{ENV_PREFIX}{name}")
    return default if value in (None, "") else value


def _require(env: Mapping[str, str], name: str, reason: str = "") -> str:
    value = _get(env, name)
    if value is None:
        raise RuntimeError(f"{ENV_PREFIX}{name} must be set{reason}")
    return value


def _find_env_file(env: Mapping[str, str]) -> Path | None:
    """Locate the settings file.

    ``ENV_FILE`` names it explicitly and must exist. Otherwise ``.env.<ENV>``
    (profile ``local`` by default) is looked up from the working directory
    upwards.
    """

    explicit = _get(env, "ENV_FILE")
    if explicit is not None:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise RuntimeError(f"{ENV_PREFIX}ENV_FILE points to a missing file: {explicit}")
        return path

    name = f".env.{_get(env, 'ENV', 'local')}"
    cwd = Path.cwd().resolve()
    for directory in (cwd, *cwd.parents):
        if (directory / name).is_file():
            return directory / name
    return None


def _read_env_file(path: Path) -> dict[str, str]:
    """Read ``KEY=value`` lines; comments and ``export`` prefixes are ignored."""

    variables: dict[str, str] = {}
    for line in path.read_text().splitlines():
        key, sep, value = line.strip().removeprefix("export ").partition("=")
        if not sep or key.startswith("#"):
            continue
        variables[key.strip()] = value.strip().strip("\"'")
    return variables


def _database_url(env: Mapping[str, str]) -> str:
    """``DATABASE_URL`` as given, or a URL assembled from the ``DB_*`` settings."""

    url = _get(env, "DATABASE_URL")
    if url is not None:
        return url
    host = _get(env, "DB_HOST")
    if host is None:
        raise RuntimeError(
            f"{ENV_PREFIX}DATABASE_URL must be set or provide {ENV_PREFIX}DB_HOST and credentials"
        )

    reason = f" when {ENV_PREFIX}DB_HOST is used"
    username = _require(env, "DB_USERNAME", reason)
    if f"{ENV_PREFIX}DB_PASSWORD" not in env:
        raise RuntimeError(f"{ENV_PREFIX}DB_PASSWORD must be set{reason}")
    port = _get(env, "DB_PORT", "5432")
    if not port.isdigit():
        raise RuntimeError(f"{ENV_PREFIX}DB_PORT must be an integer")
    return URL.create(
        drivername=_get(env, "DB_DRIVER", "postgresql+psycopg"),
        username=username,
        password=env[f"{ENV_PREFIX}DB_PASSWORD"],
        host=host,
        port=int(port),
        database=_get(env, "DB_NAME", "vesting"),
    ).render_as_string(hide_password=False)


def _positive_number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{ENV_PREFIX}{name} must be a number") from exc
    if value <= 0:
        raise RuntimeError(f"{ENV_PREFIX}{name} must be positive")
    return value


@dataclass(frozen=True)
class Settings:
    """Runtime configuration."""

    database_url: str
    ledger_account_id: str
    token_service_url: str
    transfer_timeout: float = 30.0
    reconcile_interval: float = 60.0
    max_transfer_workers: int = 4

    @staticmethod
    def load(env: Mapping[str, str] | None = None) -> "Settings":
        """Load settings from environment variables and the optional settings file."""

        shell_env = dict(os.environ if env is None else env)
        path = _find_env_file(shell_env)
        # Values set in the shell win over the file.
        merged = {**(_read_env_file(path) if path else {}), **shell_env}

        return Settings(
            database_url=_database_url(merged),
            ledger_account_id=_require(merged, "LEDGER_ACCOUNT_ID"),
            token_service_url=_require(merged, "TOKEN_SERVICE_URL"),
            transfer_timeout=_positive_number(merged, "TRANSFER_TIMEOUT", 30.0),
            reconcile_interval=_positive_number(merged, "RECONCILE_INTERVAL", 60.0),
            max_transfer_workers=int(_positive_number(merged, "MAX_TRANSFER_WORKERS", 4)),
        )


__all__ = ["Settings", "ENV_PREFIX"]
