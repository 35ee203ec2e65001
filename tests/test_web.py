from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from pathlib import Path

from aiohttp import web
from aiohttp import test_utils

from discord_stubs import StubAuditEntry, StubBot, StubGuild
from system_services.services.channel_resolver import ChannelResolver
from system_services.services.dispatch_service import EventDispatcher
from system_services.services.logger_service import LoggerService
from system_services.services.provisioning_service import GuildProvisioner
from system_services.storage import JsonFileBackend, SettingsStore
from system_services.web import WEBHOOK_ROUTE, create_web_app

SECRET = "whsec"


class ExplodingDispatcher:
    async def dispatch(self, event, guilds):
        raise RuntimeError("boom")


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _services(tmp_path: Path) -> tuple[SettingsStore, ChannelResolver, LoggerService]:
    logger = LoggerService()
    store = SettingsStore(JsonFileBackend(tmp_path / "guild_settings.json"), logger)
    asyncio.run(store.load())
    return store, ChannelResolver(store), logger


async def _post_all(app: web.Application, requests: list[tuple[bytes, dict[str, str]]]) -> list[tuple[int, str]]:
    results = []
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        for body, headers in requests:
            resp = await client.post(WEBHOOK_ROUTE, data=body, headers=headers)
            results.append((resp.status, await resp.text()))
    return results


def _post(app: web.Application, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    return asyncio.run(_post_all(app, [(body, headers)]))[0]


def test_end_to_end_join_then_signed_failure(tmp_path: Path) -> None:
    store, resolver, logger = _services(tmp_path)
    provisioner = GuildProvisioner(store, resolver, logger, timeout_sec=5)
    dispatcher = EventDispatcher(store, resolver, logger, timeout_sec=5)
    guild = StubGuild(1, "G1")
    guild.system_channel = guild.add_text_channel("general")
    guild.audit_entries.append(StubAuditEntry(guild.add_member(50)))
    bot = StubBot([guild])

    report = asyncio.run(provisioner.run(bot, guild))
    console = next(c for c in guild.text_channels if c.name == "render-console-logs")
    errors = next(c for c in guild.text_channels if c.name == "render-errors")
    assert store.get(1).render_console_logs_channel_id == console.id
    assert report.summary_channel_id == console.id
    console.sent.clear()

    app = create_web_app(secret=SECRET, dispatcher=dispatcher, guilds=lambda: bot.guilds, logger=logger)
    body = json.dumps(
        {"type": "deploy_failed", "data": {"serviceId": "svc1"}, "timestamp": "2024-01-01T00:00:00Z"}
    ).encode("utf-8")
    status, text = _post(app, body, {"x-render-signature": _sign(body)})

    assert (status, text) == (200, "OK")
    assert len(errors.sent) == 1
    assert any(field.value == "svc1" for field in errors.sent[0]["embed"].fields)
    assert len(console.sent) == 1
    assert console.sent[0]["embed"] is None
    assert "svc1" in console.sent[0]["content"]
    assert "deploy_failed" in console.sent[0]["content"]


def test_bad_signature_is_forbidden(tmp_path: Path) -> None:
    store, resolver, logger = _services(tmp_path)
    dispatcher = EventDispatcher(store, resolver, logger)
    guild = StubGuild(1)
    status_channel = guild.add_text_channel("render-status")
    app = create_web_app(secret=SECRET, dispatcher=dispatcher, guilds=lambda: [guild], logger=logger)
    body = b'{"type":"deploy_live"}'

    results = asyncio.run(_post_all(app, [(body, {"x-render-signature": _sign(body, "wrong")}), (body, {})]))

    assert [status for status, _ in results] == [403, 403]
    assert status_channel.sent == []
    assert logger.recent("webhook.rejected")


def test_invalid_json_is_bad_request(tmp_path: Path) -> None:
    store, resolver, logger = _services(tmp_path)
    app = create_web_app(secret=SECRET, dispatcher=EventDispatcher(store, resolver, logger), guilds=list, logger=logger)
    bodies = (b"{oops", b"[1, 2]", b"\xff\xfe")
    results = asyncio.run(_post_all(app, [(body, {"x-render-signature": _sign(body)}) for body in bodies]))

    assert [status for status, _ in results] == [400, 400, 400]


def test_dispatcher_crash_is_internal_error(tmp_path: Path) -> None:
    _, _, logger = _services(tmp_path)
    app = create_web_app(secret=SECRET, dispatcher=ExplodingDispatcher(), guilds=list, logger=logger)  # type: ignore[arg-type]
    body = b'{"type":"deploy_live"}'

    status, text = _post(app, body, {"x-render-signature": _sign(body)})

    assert (status, text) == (500, "Internal error")
    assert logger.recent("webhook.internal_error")


def test_insecure_mode_accepts_unsigned_and_warns_once(tmp_path: Path) -> None:
    store, resolver, logger = _services(tmp_path)
    dispatcher = EventDispatcher(store, resolver, logger)
    guild = StubGuild(1)
    status_channel = guild.add_text_channel("render-status")
    app = create_web_app(secret="", dispatcher=dispatcher, guilds=lambda: [guild], logger=logger)
    create_web_app(secret=None, dispatcher=dispatcher, guilds=lambda: [guild], logger=logger)
    body = b'{"type":"deploy_live"}'

    results = asyncio.run(_post_all(app, [(body, {}), (body, {})]))

    assert [status for status, _ in results] == [200, 200]
    assert len(logger.recent("webhook.verification_disabled")) == 1
    assert len([row for row in status_channel.sent if row["embed"]]) == 2


def test_health_endpoint(tmp_path: Path) -> None:
    store, resolver, logger = _services(tmp_path)
    app = create_web_app(
        secret=SECRET,
        dispatcher=EventDispatcher(store, resolver, logger),
        guilds=lambda: [StubGuild(1), StubGuild(2)],
        logger=logger,
    )

    async def fetch() -> dict:
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/health")
            return await resp.json()

    assert asyncio.run(fetch()) == {"status": "ok", "guilds": 2, "verification": True}
