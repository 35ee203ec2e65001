from __future__ import annotations

import asyncio
import json
from pathlib import Path

from system_services.services.logger_service import LoggerService
from system_services.storage import (
    GuildSettings,
    JsonFileBackend,
    MessagePackFileBackend,
    SettingsStore,
    backend_for_path,
)


class BrokenBackend:
    read_errors = (OSError,)

    def __init__(self, path: Path) -> None:
        self.path = path

    async def read(self):
        return None

    async def write(self, payload):
        raise OSError("read-only filesystem")


def _make_store(path: Path) -> tuple[SettingsStore, LoggerService]:
    logger = LoggerService()
    store = SettingsStore(backend_for_path(path), logger)
    asyncio.run(store.load())
    return store, logger


def test_missing_file_loads_empty_and_warns(tmp_path: Path) -> None:
    store, logger = _make_store(tmp_path / "data" / "guild_settings.json")
    assert store.all() == {}
    assert [row["event"] for row in logger.recent("store.missing")] == ["store.missing"]
    assert logger.recent("store.missing")[0]["level"] == "warning"


def test_corrupt_file_loads_empty(tmp_path: Path) -> None:
    path = tmp_path / "guild_settings.json"
    path.write_text("{not json", encoding="utf-8")
    store, logger = _make_store(path)
    assert store.all() == {}
    assert logger.recent("store.load_failed")


def test_non_mapping_document_loads_empty(tmp_path: Path) -> None:
    path = tmp_path / "guild_settings.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")
    store, logger = _make_store(path)
    assert store.all() == {}
    assert logger.recent("store.bad_document")


def test_get_returns_defaults_without_creating_record(tmp_path: Path) -> None:
    store, _ = _make_store(tmp_path / "guild_settings.json")
    record = store.get(42)
    assert record == GuildSettings()
    record.prefix = "?"
    assert store.all() == {}
    assert store.get("42").prefix is None


def test_mutate_survives_restart_json(tmp_path: Path) -> None:
    path = tmp_path / "data" / "guild_settings.json"
    store, _ = _make_store(path)

    def apply(record: GuildSettings) -> None:
        record.render_console_logs_channel_id = 555
        record.channel_ids["console-logs"] = 555
        record.prefix = "?"
        record.debug_mode = True

    asyncio.run(store.mutate(101, apply))

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw == {
        "101": {
            "renderConsoleLogsChannelId": 555,
            "channelIds": {"console-logs": 555},
            "prefix": "?",
            "debugMode": True,
        }
    }

    restarted, _ = _make_store(path)
    record = restarted.get(101)
    assert record.render_console_logs_channel_id == 555
    assert record.channel_ids == {"console-logs": 555}
    assert record.prefix == "?"
    assert record.debug_mode is True
    assert record.logging_enabled is None


def test_mutate_survives_restart_msgpack(tmp_path: Path) -> None:
    path = tmp_path / "guild_settings.msgpack"
    store, _ = _make_store(path)
    assert isinstance(store.backend, MessagePackFileBackend)

    def apply(record: GuildSettings) -> None:
        record.webhook_forwarding_enabled = False

    asyncio.run(store.mutate("7", apply))
    restarted, _ = _make_store(path)
    assert restarted.get(7).webhook_forwarding_enabled is False


def test_whole_mapping_rewritten_on_each_mutation(tmp_path: Path) -> None:
    path = tmp_path / "guild_settings.json"
    store, _ = _make_store(path)

    def set_prefix(value: str):
        def apply(record: GuildSettings) -> None:
            record.prefix = value

        return apply

    asyncio.run(store.mutate(1, set_prefix("a")))
    asyncio.run(store.mutate(2, set_prefix("b")))
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert set(raw) == {"1", "2"}


def test_persist_failure_keeps_memory(tmp_path: Path) -> None:
    logger = LoggerService()
    store = SettingsStore(BrokenBackend(tmp_path / "x.json"), logger)
    asyncio.run(store.load())

    def apply(record: GuildSettings) -> None:
        record.alerts_channel_id = 99

    asyncio.run(store.mutate(5, apply))
    assert store.get(5).alerts_channel_id == 99
    assert logger.recent("store.persist_failed")


def test_from_dict_ignores_garbage() -> None:
    record = GuildSettings.from_dict(
        {
            "renderConsoleLogsChannelId": "123",
            "logChannelId": "nope",
            "alertsChannelId": True,
            "channelIds": {"status": "9", "errors": None},
            "prefix": "   ",
            "debugMode": "yes",
            "somethingElse": 1,
        }
    )
    assert record.render_console_logs_channel_id == 123
    assert record.log_channel_id is None
    assert record.alerts_channel_id is None
    assert record.channel_ids == {"status": 9}
    assert record.prefix is None
    assert record.debug_mode is None


def test_backend_selection(tmp_path: Path) -> None:
    assert isinstance(backend_for_path(tmp_path / "a.json"), JsonFileBackend)
    assert isinstance(backend_for_path(tmp_path / "a.mpk"), MessagePackFileBackend)
