from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

import discord
from aiohttp import web
from discord.ext import commands

from system_services.config import Settings
from system_services.services.channel_resolver import ChannelResolver, ChannelRole
from system_services.services.dispatch_service import EventDispatcher
from system_services.services.logger_service import LoggerService
from system_services.services.provisioning_service import MANAGER_ROLE_NAME, GuildProvisioner
from system_services.storage import GuildSettings, SettingsStore, backend_for_path
from system_services.utils.discord_utils import bounded
from system_services.web import create_web_app

T = TypeVar("T", bound=Callable[..., Any])

PRESENCE_INTERVAL_SEC = 5 * 60
PRESENCE_ROTATION: tuple[str, ...] = (
    "Render deploys",
    "service health",
    "{guilds} servers",
    "for failed builds",
)
FLAG_ALIASES: dict[str, str] = {
    "logging": "logging_enabled",
    "debug": "debug_mode",
    "forwarding": "webhook_forwarding_enabled",
}
OVERRIDE_ALIASES: dict[str, str] = {
    "log": "log_channel_id",
    "alerts": "alerts_channel_id",
}
TRUTHY = {"on", "true", "yes", "1", "enable", "enabled"}
FALSY = {"off", "false", "no", "0", "disable", "disabled"}


def parse_switch(raw: str) -> bool | None:
    value = raw.strip().lower()
    if value in TRUTHY:
        return True
    if value in FALSY:
        return False
    return None


def describe_settings(record: GuildSettings) -> list[str]:
    def fmt_channel(channel_id: int | None) -> str:
        return f"<#{channel_id}>" if channel_id else "unset"

    def fmt_flag(value: bool | None) -> str:
        return "unset" if value is None else ("on" if value else "off")

    lines = [
        f"Prefix: `{record.prefix or 'default'}`",
        f"Console logs: {fmt_channel(record.render_console_logs_channel_id)}",
        f"Log override: {fmt_channel(record.log_channel_id)}",
        f"Alerts override: {fmt_channel(record.alerts_channel_id)}",
    ]
    for alias, attr in FLAG_ALIASES.items():
        lines.append(f"{alias}: `{fmt_flag(getattr(record, attr))}`")
    for role, channel_id in sorted(record.channel_ids.items()):
        lines.append(f"{role}: {fmt_channel(channel_id)}")
    return lines


class SystemServicesBot(commands.Bot):
    def __init__(self, settings: Settings) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.message_content = True
        super().__init__(command_prefix=self._prefix_for_message, intents=intents, help_command=None)
        self.settings = settings
        self.logger = LoggerService()
        self.store = SettingsStore(backend_for_path(settings.store_path), self.logger)
        self.resolver = ChannelResolver(self.store)
        self.provisioner = GuildProvisioner(self.store, self.resolver, self.logger, timeout_sec=settings.remote_timeout_sec)
        self.dispatcher = EventDispatcher(self.store, self.resolver, self.logger, timeout_sec=settings.remote_timeout_sec)
        self.started_at = datetime.now(tz=timezone.utc)
        self._presence_task: asyncio.Task | None = None
        self._ready_once = False

    async def setup_hook(self) -> None:
        await self.store.load()
        self._register_commands()

    def web_app(self) -> web.Application:
        return create_web_app(
            secret=self.settings.render_webhook_secret,
            dispatcher=self.dispatcher,
            guilds=lambda: self.guilds,
            logger=self.logger,
        )

    def _prefix_for_message(self, bot: commands.Bot, message: discord.Message) -> str:
        if message.guild is None:
            return self.settings.command_prefix
        return self.store.get(message.guild.id).prefix or self.settings.command_prefix

    def _can_manage(self, member: discord.abc.User | discord.Member) -> bool:
        perms = getattr(member, "guild_permissions", None)
        if perms is not None and perms.administrator:
            return True
        return any(role.name == MANAGER_ROLE_NAME for role in getattr(member, "roles", []))

    def _manager_check(self) -> Callable[[T], T]:
        async def predicate(ctx: commands.Context) -> bool:
            return ctx.guild is not None and self._can_manage(ctx.author)

        return commands.check(predicate)

    def _register_commands(self) -> None:
        @self.command(name="ping")
        async def ping(ctx: commands.Context) -> None:
            await ctx.send(f"Pong! `{round(self.latency * 1000)}ms`")

        @self.command(name="about")
        async def about(ctx: commands.Context) -> None:
            uptime = datetime.now(tz=timezone.utc) - self.started_at
            verification = "enforced" if self.settings.verification_enabled else "disabled"
            await ctx.send(
                f"Uptime: `{uptime}`\n"
                f"Guilds: `{len(self.guilds)}`\n"
                f"Webhook verification: `{verification}`"
            )

        @self.command(name="help")
        async def help_cmd(ctx: commands.Context) -> None:
            prefix = ctx.prefix or self.settings.command_prefix
            lines = [
                f"`{prefix}ping` latency check",
                f"`{prefix}about` uptime and webhook status",
                f"`{prefix}setup` re-run channel/role provisioning (manager)",
                f"`{prefix}settings` show this server's settings (manager)",
                f"`{prefix}prefix <value>` change the command prefix (manager)",
                f"`{prefix}toggle <{'|'.join(FLAG_ALIASES)}> <on|off>` feature flags (manager)",
                f"`{prefix}setchannel <log|alerts> #channel` routing overrides (manager)",
                f"`{prefix}clearchannel <log|alerts>` remove an override (manager)",
            ]
            await ctx.send("\n".join(lines))

        @self.command(name="setup")
        @self._manager_check()
        async def setup_cmd(ctx: commands.Context) -> None:
            report = await self.provisioner.run(self, ctx.guild)
            self.logger.log("command.setup", actor_id=ctx.author.id, guild_id=ctx.guild.id, failed=len(report.failures))
            await ctx.send("System Services setup complete.")

        @self.command(name="settings")
        @self._manager_check()
        async def settings_cmd(ctx: commands.Context) -> None:
            await ctx.send("\n".join(describe_settings(self.store.get(ctx.guild.id)))[:1900])

        @self.command(name="prefix")
        @self._manager_check()
        async def prefix_cmd(ctx: commands.Context, value: str) -> None:
            value = value.strip()[:10]
            if not value:
                await ctx.send("Prefix cannot be empty.")
                return

            def apply(record: GuildSettings) -> None:
                record.prefix = value

            await self.store.mutate(ctx.guild.id, apply)
            self.logger.log("settings.prefix", actor_id=ctx.author.id, guild_id=ctx.guild.id, prefix=value)
            await ctx.send(f"Prefix set to `{value}`.")

        @self.command(name="toggle")
        @self._manager_check()
        async def toggle_cmd(ctx: commands.Context, flag: str, state: str) -> None:
            attr = FLAG_ALIASES.get(flag.strip().lower())
            value = parse_switch(state)
            if attr is None or value is None:
                await ctx.send(f"Usage: toggle <{'|'.join(FLAG_ALIASES)}> <on|off>")
                return

            def apply(record: GuildSettings) -> None:
                setattr(record, attr, value)

            await self.store.mutate(ctx.guild.id, apply)
            self.logger.log("settings.flag", actor_id=ctx.author.id, guild_id=ctx.guild.id, flag=attr, value=value)
            await ctx.send(f"`{flag}` is now `{'on' if value else 'off'}`.")

        @self.command(name="setchannel")
        @self._manager_check()
        async def setchannel_cmd(ctx: commands.Context, kind: str, channel: discord.TextChannel) -> None:
            attr = OVERRIDE_ALIASES.get(kind.strip().lower())
            if attr is None:
                await ctx.send("Usage: setchannel <log|alerts> #channel")
                return

            def apply(record: GuildSettings) -> None:
                setattr(record, attr, channel.id)

            await self.store.mutate(ctx.guild.id, apply)
            self.logger.log("settings.channel", actor_id=ctx.author.id, guild_id=ctx.guild.id, kind=kind, channel_id=channel.id)
            await ctx.send(f"`{kind}` channel set to {channel.mention}.")

        @self.command(name="clearchannel")
        @self._manager_check()
        async def clearchannel_cmd(ctx: commands.Context, kind: str) -> None:
            attr = OVERRIDE_ALIASES.get(kind.strip().lower())
            if attr is None:
                await ctx.send("Usage: clearchannel <log|alerts>")
                return

            def apply(record: GuildSettings) -> None:
                setattr(record, attr, None)

            await self.store.mutate(ctx.guild.id, apply)
            self.logger.log("settings.channel_cleared", actor_id=ctx.author.id, guild_id=ctx.guild.id, kind=kind)
            await ctx.send(f"`{kind}` channel override cleared.")

    async def on_ready(self) -> None:
        if self._ready_once:
            return
        self._ready_once = True
        self.logger.log("bot.ready", user_id=self.user.id if self.user else None, guilds=len(self.guilds))
        if self._presence_task is None or self._presence_task.done():
            self._presence_task = asyncio.create_task(self._run_presence_loop(), name="presence-rotation")
        await asyncio.gather(*(self._announce_online(guild) for guild in self.guilds))

    async def _announce_online(self, guild: discord.Guild) -> None:
        channel = self.resolver.resolve(guild, ChannelRole.BOT_STATUS, fallback=False)
        if channel is None:
            return
        try:
            await bounded(channel.send(f"System Services online. Watching `{len(self.guilds)}` servers."), self.settings.remote_timeout_sec)
        except (discord.HTTPException, asyncio.TimeoutError) as exc:
            self.logger.warn("bot.announce_failed", guild_id=guild.id, error=repr(exc))

    def presence_text(self, index: int) -> str:
        template = PRESENCE_ROTATION[index % len(PRESENCE_ROTATION)]
        return template.format(guilds=len(self.guilds))

    async def _run_presence_loop(self) -> None:
        index = 0
        while not self.is_closed():
            activity = discord.Activity(type=discord.ActivityType.watching, name=self.presence_text(index))
            try:
                await self.change_presence(activity=activity)
            except (discord.HTTPException, ConnectionError) as exc:
                self.logger.warn("bot.presence_failed", error=repr(exc))
            index += 1
            await asyncio.sleep(PRESENCE_INTERVAL_SEC)

    async def on_guild_join(self, guild: discord.Guild) -> None:
        self.logger.log("guild.joined", guild_id=guild.id, guild_name=guild.name)
        await self.provisioner.run(self, guild)

    async def on_guild_remove(self, guild: discord.Guild) -> None:
        self.logger.log("guild.removed", guild_id=guild.id, guild_name=guild.name)

    async def on_command_error(self, ctx: commands.Context, exception: Exception) -> None:
        if isinstance(exception, commands.CommandNotFound):
            return
        if isinstance(exception, commands.CheckFailure):
            await ctx.send(f"Only members with `{MANAGER_ROLE_NAME}` can do that.")
            return
        if isinstance(exception, commands.UserInputError):
            await ctx.send(f"Invalid arguments: {exception}")
            return
        self.logger.warn("command.error", error=str(exception), command=ctx.command.name if ctx.command else "unknown")
        await ctx.send(f"Command error: {exception}")


async def run(settings: Settings) -> None:
    bot = SystemServicesBot(settings)
    runner = web.AppRunner(bot.web_app())
    await runner.setup()
    site = web.TCPSite(runner, settings.listen_host, settings.port)
    await site.start()
    bot.logger.log("web.listening", host=settings.listen_host, port=settings.port)
    try:
        await bot.start(settings.discord_token)
    finally:
        if not bot.is_closed():
            await bot.close()
        await runner.cleanup()


def main() -> None:
    settings = Settings.load()
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        return


if __name__ == "__main__":
    main()
