from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Iterable

import discord

from system_services.services.channel_resolver import ChannelResolver, ChannelRole
from system_services.services.logger_service import LoggerService
from system_services.storage import SettingsStore
from system_services.utils.discord_utils import bounded, code_block

FAILURE_MARKERS = ("fail", "error", "crash")
FAILURE_COLOUR = discord.Colour.red()
STATUS_COLOUR = discord.Colour.green()


@dataclass
class WebhookEvent:
    type: str
    timestamp: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WebhookEvent":
        data = payload.get("data")
        timestamp = payload.get("timestamp")
        return cls(
            type=str(payload.get("type") or "unknown"),
            timestamp=str(timestamp) if timestamp is not None else None,
            data=dict(data) if isinstance(data, dict) else {},
            raw=payload,
        )

    @property
    def is_failure(self) -> bool:
        kind = self.type.lower()
        return any(marker in kind for marker in FAILURE_MARKERS)

    def field_value(self, key: str) -> str | None:
        value = self.data.get(key)
        if value is None or value == "":
            return None
        return str(value)

    @property
    def service_id(self) -> str | None:
        return self.field_value("serviceId")


@dataclass
class DispatchSummary:
    delivered: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


def build_event_embed(event: WebhookEvent) -> discord.Embed:
    title = "Render Failure" if event.is_failure else "Render Status"
    embed = discord.Embed(
        title=title,
        description=f"`{event.type}`",
        colour=FAILURE_COLOUR if event.is_failure else STATUS_COLOUR,
    )
    embed.add_field(name="Service ID", value=event.service_id or "Unknown", inline=True)
    for label, key in (("Service", "serviceName"), ("Deploy ID", "deployId"), ("Region", "region")):
        value = event.field_value(key)
        if value:
            embed.add_field(name=label, value=value[:1024], inline=True)
    embed.set_footer(text=f"Timestamp: {event.timestamp or 'Unknown'}")
    return embed


def build_audit_block(event: WebhookEvent, *, debug: bool = False) -> str:
    lines = [
        f"Event Type: {event.type}",
        f"Service ID: {event.service_id or 'Unknown'}",
        f"Timestamp: {event.timestamp or 'Unknown'}",
    ]
    if debug:
        lines.append("Payload:")
        lines.append(json.dumps(event.raw, ensure_ascii=False, default=str))
    return code_block("RENDER FAILURE" if event.is_failure else "RENDER STATUS", lines)


class EventDispatcher:
    """Fan a verified webhook event out to every guild; one guild's trouble never reaches another."""

    def __init__(
        self,
        store: SettingsStore,
        resolver: ChannelResolver,
        logger: LoggerService,
        timeout_sec: float = 15.0,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.logger = logger
        self.timeout_sec = timeout_sec

    async def dispatch(self, event: WebhookEvent, guilds: Iterable[discord.Guild]) -> DispatchSummary:
        summary = DispatchSummary()
        targets = []
        for guild in guilds:
            if self.store.get(guild.id).webhook_forwarding_enabled is False:
                summary.skipped.append(guild.id)
                continue
            targets.append(guild)
        results = await asyncio.gather(*(self._dispatch_guild(guild, event) for guild in targets), return_exceptions=True)
        for guild, result in zip(targets, results):
            if result is True:
                summary.delivered.append(guild.id)
                continue
            summary.failed.append(guild.id)
            if isinstance(result, BaseException):
                self.logger.warn("dispatch.guild_failed", guild_id=guild.id, error=repr(result))
        self.logger.log(
            "dispatch.completed",
            event_type=event.type,
            failure=event.is_failure,
            delivered=len(summary.delivered),
            failed=len(summary.failed),
            skipped=len(summary.skipped),
        )
        return summary

    async def _dispatch_guild(self, guild: discord.Guild, event: WebhookEvent) -> bool:
        record = self.store.get(guild.id)
        status = self.resolver.resolve(guild, ChannelRole.STATUS, fallback=False)
        errors = self.resolver.resolve(guild, ChannelRole.ERRORS, fallback=False)
        console = self.resolver.resolve(guild, ChannelRole.CONSOLE_LOGS, fallback=False)
        if event.is_failure:
            target = errors if errors is not None else status
        else:
            target = status if status is not None else console
        if target is None:
            # Only the routed message may land on an arbitrary sendable channel.
            target = self.resolver.resolve(guild, ChannelRole.STATUS)

        delivered = False
        if target is None:
            self.logger.warn("dispatch.no_channel", guild_id=guild.id, event_type=event.type)
        else:
            delivered = await self._send(guild, target, embed=build_event_embed(event))

        if console is not None and record.logging_enabled is not False:
            await self._send(guild, console, content=build_audit_block(event, debug=record.debug_mode is True))
        return delivered

    async def _send(self, guild: discord.Guild, channel: Any, **payload: Any) -> bool:
        try:
            await bounded(channel.send(**payload), self.timeout_sec)
        except (discord.HTTPException, discord.ClientException, asyncio.TimeoutError) as exc:
            self.logger.warn("dispatch.send_failed", guild_id=guild.id, channel_id=channel.id, error=repr(exc))
            return False
        self.logger.log("dispatch.delivered", guild_id=guild.id, channel_id=channel.id)
        return True
