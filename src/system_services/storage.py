from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

import aiofiles
import msgpack
from msgpack.exceptions import UnpackException

from system_services.services.logger_service import LoggerService


@dataclass
class GuildSettings:
    render_console_logs_channel_id: int | None = None
    log_channel_id: int | None = None
    alerts_channel_id: int | None = None
    channel_ids: dict[str, int] = field(default_factory=dict)
    prefix: str | None = None
    logging_enabled: bool | None = None
    debug_mode: bool | None = None
    webhook_forwarding_enabled: bool | None = None

    FLAG_NAMES = ("logging_enabled", "debug_mode", "webhook_forwarding_enabled")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for attr, key in _FIELD_KEYS.items():
            value = getattr(self, attr)
            if value is None or value == {}:
                continue
            payload[key] = dict(value) if isinstance(value, dict) else value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "GuildSettings":
        record = cls()
        for attr in ("render_console_logs_channel_id", "log_channel_id", "alerts_channel_id"):
            setattr(record, attr, _channel_id(raw.get(_FIELD_KEYS[attr])))
        channel_ids = raw.get(_FIELD_KEYS["channel_ids"])
        if isinstance(channel_ids, dict):
            for role, value in channel_ids.items():
                channel_id = _channel_id(value)
                if channel_id is not None:
                    record.channel_ids[str(role)] = channel_id
        prefix = raw.get(_FIELD_KEYS["prefix"])
        if isinstance(prefix, str) and prefix.strip():
            record.prefix = prefix.strip()
        for attr in cls.FLAG_NAMES:
            value = raw.get(_FIELD_KEYS[attr])
            if isinstance(value, bool):
                setattr(record, attr, value)
        return record

    def copy(self) -> "GuildSettings":
        return GuildSettings.from_dict(self.to_dict())


_FIELD_KEYS: dict[str, str] = {
    "render_console_logs_channel_id": "renderConsoleLogsChannelId",
    "log_channel_id": "logChannelId",
    "alerts_channel_id": "alertsChannelId",
    "channel_ids": "channelIds",
    "prefix": "prefix",
    "logging_enabled": "loggingEnabled",
    "debug_mode": "debugMode",
    "webhook_forwarding_enabled": "webhookForwardingEnabled",
}


def _channel_id(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        channel_id = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return channel_id if channel_id > 0 else None


class StorageBackend(Protocol):
    path: Path
    read_errors: tuple[type[BaseException], ...]

    async def read(self) -> Any: ...

    async def write(self, payload: dict[str, Any]) -> None: ...


class JsonFileBackend:
    read_errors: tuple[type[BaseException], ...] = (OSError, ValueError)

    def __init__(self, path: Path) -> None:
        self.path = path

    async def read(self) -> Any:
        if not self.path.exists():
            return None
        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            raw = await f.read()
        return json.loads(raw)

    async def write(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload, indent=2, ensure_ascii=False))
        os.replace(tmp, self.path)


class MessagePackFileBackend:
    read_errors: tuple[type[BaseException], ...] = (OSError, ValueError, UnpackException)

    def __init__(self, path: Path) -> None:
        self.path = path

    async def read(self) -> Any:
        if not self.path.exists():
            return None
        async with aiofiles.open(self.path, "rb") as f:
            raw = await f.read()
        return msgpack.unpackb(raw, raw=False)

    async def write(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(msgpack.packb(payload, use_bin_type=True))
        os.replace(tmp, self.path)


def backend_for_path(path: Path) -> StorageBackend:
    if path.suffix.lower() in {".msgpack", ".mpk"}:
        return MessagePackFileBackend(path)
    return JsonFileBackend(path)


class SettingsStore:
    """
    Guild ID -> GuildSettings, held in memory and written back wholesale on every mutation.

    Memory is authoritative for the lifetime of the process; a failed write is logged and
    the next successful mutation carries the lost change to disk.
    """

    def __init__(self, backend: StorageBackend, logger: LoggerService) -> None:
        self.backend = backend
        self.logger = logger
        self._lock = asyncio.Lock()
        self._records: dict[str, GuildSettings] = {}

    async def load(self) -> dict[str, GuildSettings]:
        try:
            self.backend.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self.logger.warn("store.mkdir_failed", path=str(self.backend.path.parent), error=repr(exc))
        try:
            raw = await self.backend.read()
        except self.backend.read_errors as exc:
            self.logger.warn("store.load_failed", path=str(self.backend.path), error=repr(exc))
            raw = None
        else:
            if raw is None:
                self.logger.warn("store.missing", path=str(self.backend.path))
        records: dict[str, GuildSettings] = {}
        if raw is not None and not isinstance(raw, dict):
            self.logger.warn("store.bad_document", path=str(self.backend.path), kind=type(raw).__name__)
        elif isinstance(raw, dict):
            for key, value in raw.items():
                guild_key = str(key).strip()
                if not guild_key or not isinstance(value, dict):
                    continue
                records[guild_key] = GuildSettings.from_dict(value)
        self._records = records
        self.logger.log("store.loaded", path=str(self.backend.path), guilds=len(records))
        return dict(records)

    def get(self, guild_id: int | str) -> GuildSettings:
        record = self._records.get(_guild_key(guild_id))
        if record is None:
            return GuildSettings()
        return record.copy()

    def all(self) -> dict[str, GuildSettings]:
        return {key: record.copy() for key, record in self._records.items()}

    async def mutate(self, guild_id: int | str, updater: Callable[[GuildSettings], object]) -> GuildSettings:
        key = _guild_key(guild_id)
        record = self._records.setdefault(key, GuildSettings())
        updater(record)
        await self.save()
        return record.copy()

    async def save(self) -> bool:
        async with self._lock:
            payload = {key: record.to_dict() for key, record in self._records.items()}
            try:
                await self.backend.write(payload)
            except (OSError, TypeError, ValueError) as exc:
                self.logger.warn("store.persist_failed", path=str(self.backend.path), error=repr(exc))
                return False
        return True


def _guild_key(guild_id: int | str) -> str:
    key = str(guild_id).strip()
    if not key:
        raise ValueError("guild id must be a non-empty string")
    return key
