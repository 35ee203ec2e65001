from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


@dataclass(frozen=True)
class Settings:
    discord_token: str
    render_webhook_secret: str
    listen_host: str
    port: int
    command_prefix: str
    store_path: Path
    remote_timeout_sec: float

    @property
    def verification_enabled(self) -> bool:
        return bool(self.render_webhook_secret)

    @staticmethod
    def load(env: Mapping[str, str] | None = None, env_file: Path = Path(".env")) -> "Settings":
        values = _parse_env_file(env_file)
        values.update(os.environ if env is None else env)
        token = values.get("DISCORD_TOKEN", "").strip()
        if not token:
            raise RuntimeError("DISCORD_TOKEN is required (environment or .env).")
        return Settings(
            discord_token=token,
            render_webhook_secret=values.get("RENDER_WEBHOOK_SECRET", "").strip(),
            listen_host=values.get("LISTEN_HOST", "0.0.0.0").strip() or "0.0.0.0",
            port=_int_value(values, "PORT", 3000),
            command_prefix=values.get("COMMAND_PREFIX", "!").strip() or "!",
            store_path=Path(values.get("STORE_PATH", "data/guild_settings.json").strip() or "data/guild_settings.json"),
            remote_timeout_sec=_float_value(values, "REMOTE_TIMEOUT_SEC", 15.0),
        )


def _int_value(values: Mapping[str, str], key: str, default: int) -> int:
    raw = str(values.get(key, "")).strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer, got {raw!r}.") from None


def _float_value(values: Mapping[str, str], key: str, default: float) -> float:
    raw = str(values.get(key, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number, got {raw!r}.") from None
    if value <= 0:
        raise RuntimeError(f"{key} must be positive, got {raw!r}.")
    return value


def _parse_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values
