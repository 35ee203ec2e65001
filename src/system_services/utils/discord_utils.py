from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

import discord

T = TypeVar("T")

TEXT_CHANNEL_TYPES = (discord.ChannelType.text, discord.ChannelType.news)
DISCORD_MESSAGE_LIMIT = 2000


async def get_bot_member(bot: discord.Client, guild: discord.Guild) -> discord.Member | None:
    """
    Resolve the bot's Member object for a guild.

    `guild.me` can be None depending on cache state/intents; this helper tries cache
    and then falls back to an API fetch.
    """

    me = guild.me
    if me is not None:
        return me
    if bot.user is None:
        return None
    cached = guild.get_member(bot.user.id)
    if cached is not None:
        return cached
    try:
        return await guild.fetch_member(bot.user.id)
    except (discord.Forbidden, discord.HTTPException):
        return None


def is_text_channel(channel: Any) -> bool:
    return getattr(channel, "type", None) in TEXT_CHANNEL_TYPES


def can_send(channel: Any, member: Any) -> bool:
    if channel is None or member is None or not is_text_channel(channel):
        return False
    perms = channel.permissions_for(member)
    return bool(perms.view_channel and perms.send_messages)


async def bounded(awaitable: Awaitable[T], timeout: float) -> T:
    return await asyncio.wait_for(awaitable, timeout=timeout)


def code_block(title: str, lines: list[str]) -> str:
    body = "\n".join(lines)
    text = f"```\n===== {title} =====\n{body}\n=====\n```"
    if len(text) <= DISCORD_MESSAGE_LIMIT:
        return text
    keep = DISCORD_MESSAGE_LIMIT - len(f"```\n===== {title} =====\n\n…\n=====\n```")
    return f"```\n===== {title} =====\n{body[:keep]}\n…\n=====\n```"
