from __future__ import annotations

from enum import Enum
from typing import Any

import discord

from system_services.storage import GuildSettings, SettingsStore
from system_services.utils.discord_utils import can_send, is_text_channel


class ChannelRole(Enum):
    CONSOLE_LOGS = "console-logs"
    ERRORS = "errors"
    FAILED = "failed"
    STATUS = "status"
    BOT_STATUS = "bot-status"

    @property
    def channel_name(self) -> str:
        return CHANNEL_NAMES[self]

    @classmethod
    def from_alias(cls, alias: "str | ChannelRole") -> "ChannelRole | None":
        if isinstance(alias, ChannelRole):
            return alias
        key = str(alias).strip().lower().lstrip("#")
        for role in cls:
            if key in (role.value, role.channel_name):
                return role
        return None


CHANNEL_NAMES: dict[ChannelRole, str] = {
    ChannelRole.CONSOLE_LOGS: "render-console-logs",
    ChannelRole.ERRORS: "render-errors",
    ChannelRole.FAILED: "render-failed",
    ChannelRole.STATUS: "render-status",
    ChannelRole.BOT_STATUS: "bot-status",
}

# Operator overrides set through commands; they win over provisioned ids and skip the name check.
OVERRIDE_FIELDS: dict[ChannelRole, str] = {
    ChannelRole.ERRORS: "alerts_channel_id",
    ChannelRole.BOT_STATUS: "log_channel_id",
}


class ChannelResolver:
    def __init__(self, store: SettingsStore) -> None:
        self.store = store

    def resolve(self, guild: discord.Guild, alias: str | ChannelRole, *, fallback: bool = True) -> Any | None:
        me = guild.me
        if me is None:
            return None
        role = ChannelRole.from_alias(alias)
        name = role.channel_name if role else str(alias).strip().lstrip("#")

        if role is not None:
            cached = self._from_settings(guild, me, role, self.store.get(guild.id))
            if cached is not None:
                return cached

        for channel in guild.text_channels:
            if channel.name == name and can_send(channel, me):
                return channel

        if not fallback:
            return None
        for channel in guild.text_channels:
            if can_send(channel, me):
                return channel
        return None

    def _from_settings(self, guild: discord.Guild, me: Any, role: ChannelRole, record: GuildSettings) -> Any | None:
        override_attr = OVERRIDE_FIELDS.get(role)
        if override_attr:
            channel = guild.get_channel(getattr(record, override_attr) or 0)
            if channel is not None and can_send(channel, me):
                return channel

        candidates = [record.channel_ids.get(role.value)]
        if role is ChannelRole.CONSOLE_LOGS:
            candidates.append(record.render_console_logs_channel_id)
        for channel_id in candidates:
            if not channel_id:
                continue
            channel = guild.get_channel(channel_id)
            if channel is None or not is_text_channel(channel):
                continue
            if channel.name != role.channel_name:
                continue
            if can_send(channel, me):
                return channel
        return None
