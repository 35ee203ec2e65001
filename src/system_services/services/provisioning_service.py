from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable

import discord

from system_services.services.channel_resolver import ChannelResolver, ChannelRole
from system_services.services.logger_service import LoggerService
from system_services.storage import GuildSettings, SettingsStore
from system_services.utils.discord_utils import bounded, code_block, get_bot_member, is_text_channel

CATEGORY_NAME = "System Services Status"
MANAGER_ROLE_NAME = "System Services Manager"
WEBHOOK_NAME = "System Services"
AUDIT_REASON = "Auto-created by System Services"
REQUIRED_PERMISSIONS = ("manage_channels", "manage_roles", "manage_webhooks", "send_messages", "view_channel")
CHANNEL_TOPICS: dict[ChannelRole, str] = {
    ChannelRole.CONSOLE_LOGS: "Render webhook audit trail and provisioning logs.",
    ChannelRole.ERRORS: "Render failures, errors and crashes.",
    ChannelRole.FAILED: "Failed Render deploys.",
    ChannelRole.STATUS: "Render deploy status updates.",
    ChannelRole.BOT_STATUS: "System Services bot status notes.",
}
STEP_ERRORS = (discord.HTTPException, discord.ClientException, asyncio.TimeoutError)


@dataclass
class StepOutcome:
    step: str
    status: str
    detail: str

    @property
    def ok(self) -> bool:
        return self.status != "FAIL"

    def line(self) -> str:
        return f"[{self.status}] {self.step}: {self.detail}"


@dataclass
class ProvisioningReport:
    guild_id: int
    guild_name: str
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    outcomes: list[StepOutcome] = field(default_factory=list)
    channels: dict[ChannelRole, Any] = field(default_factory=dict)
    category: Any | None = None
    role: Any | None = None
    webhook: Any | None = None
    summary_channel_id: int | None = None
    completed: bool = False

    def add(self, outcome: StepOutcome) -> None:
        self.outcomes.append(outcome)

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def failures(self) -> list[StepOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    def lines(self) -> list[str]:
        out = [
            f"Guild Name: {self.guild_name}",
            f"Guild ID: {self.guild_id}",
            f"Timestamp: {self.started_at.isoformat()}",
        ]
        out.extend(outcome.line() for outcome in self.outcomes)
        out.append(f"Result: {self.count('OK')} ok, {self.count('WARN')} warnings, {self.count('FAIL')} failed")
        return out


class GuildProvisioner:
    """
    Builds the System Services layout in a guild.

    Every step reports a StepOutcome instead of raising, so a guild that granted only part
    of the permission set still ends up with whatever could be created and an audit block
    listing the rest. Runs for the same guild are serialized; re-running reuses what exists.
    """

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
        self._locks: dict[int, asyncio.Lock] = {}

    async def run(self, bot: discord.Client, guild: discord.Guild) -> ProvisioningReport:
        lock = self._locks.setdefault(guild.id, asyncio.Lock())
        async with lock:
            return await self._run_locked(bot, guild)

    async def _run_locked(self, bot: discord.Client, guild: discord.Guild) -> ProvisioningReport:
        report = ProvisioningReport(guild_id=guild.id, guild_name=guild.name)
        self.logger.log("provision.started", guild_id=guild.id, guild_name=guild.name)
        me = await get_bot_member(bot, guild)

        for outcome in self._check_permissions(me):
            report.add(outcome)
        report.add(await self._step("Webhook", self._ensure_webhook(guild, me, report)))
        report.add(await self._step("Category", self._ensure_category(guild, me, report)))
        for role in ChannelRole:
            report.add(await self._step(f"Channel {role.channel_name}", self._ensure_channel(guild, me, role, report)))
        await self._record_channels(guild, report)
        report.add(await self._step("Role", self._ensure_role(guild, report)))
        report.add(await self._step("Role assignment", self._assign_role(guild, report)))

        await self._post_summary(guild, report)
        report.completed = True
        self.logger.log(
            "provision.completed",
            guild_id=guild.id,
            ok=report.count("OK"),
            warnings=report.count("WARN"),
            failed=report.count("FAIL"),
        )
        return report

    async def _step(self, step: str, work: Awaitable[StepOutcome]) -> StepOutcome:
        try:
            return await work
        except STEP_ERRORS as exc:
            detail = _describe(exc)
            self.logger.warn("provision.step_failed", step=step, error=detail)
            return StepOutcome(step, "FAIL", detail)

    def _check_permissions(self, me: discord.Member | None) -> list[StepOutcome]:
        if me is None:
            return [StepOutcome("Permissions", "WARN", "bot member unavailable; permissions unknown")]
        perms = me.guild_permissions
        missing = [name for name in REQUIRED_PERMISSIONS if not getattr(perms, name, False)]
        if not missing:
            return [StepOutcome("Permissions", "OK", "all required permissions granted")]
        self.logger.warn("provision.missing_permissions", guild_id=me.guild.id, missing=missing)
        return [StepOutcome("Permissions", "WARN", f"missing {name}") for name in missing]

    async def _ensure_webhook(self, guild: discord.Guild, me: discord.Member | None, report: ProvisioningReport) -> StepOutcome:
        target = self._webhook_channel(guild, me)
        if target is None:
            return StepOutcome("Webhook", "FAIL", "no channel available for webhook")
        hooks = await bounded(target.webhooks(), self.timeout_sec)
        existing = discord.utils.get(hooks, name=WEBHOOK_NAME)
        if existing is not None:
            report.webhook = existing
            return StepOutcome("Webhook", "OK", f"reused webhook {WEBHOOK_NAME} in #{target.name}")
        report.webhook = await bounded(target.create_webhook(name=WEBHOOK_NAME, reason=AUDIT_REASON), self.timeout_sec)
        return StepOutcome("Webhook", "OK", f"created webhook {WEBHOOK_NAME} in #{target.name}")

    def _webhook_channel(self, guild: discord.Guild, me: discord.Member | None) -> Any | None:
        system_channel = guild.system_channel
        if system_channel is not None and is_text_channel(system_channel):
            return system_channel
        for channel in guild.text_channels:
            if me is not None and channel.permissions_for(me).manage_webhooks:
                return channel
        return None

    def _overwrites(self, guild: discord.Guild, me: discord.Member | None) -> dict[Any, discord.PermissionOverwrite]:
        overwrites: dict[Any, discord.PermissionOverwrite] = {
            guild.default_role: discord.PermissionOverwrite(view_channel=False),
        }
        if me is not None:
            # A bot without a role of its own has @everyone as top_role; grant the member instead.
            target = me if me.top_role == guild.default_role else me.top_role
            overwrites[target] = discord.PermissionOverwrite(
                view_channel=True,
                send_messages=True,
                manage_messages=True,
            )
        return overwrites

    async def _ensure_category(self, guild: discord.Guild, me: discord.Member | None, report: ProvisioningReport) -> StepOutcome:
        existing = discord.utils.get(guild.categories, name=CATEGORY_NAME)
        if existing is not None:
            report.category = existing
            return StepOutcome("Category", "OK", f"reused category {CATEGORY_NAME}")
        report.category = await bounded(
            guild.create_category(CATEGORY_NAME, overwrites=self._overwrites(guild, me), reason=AUDIT_REASON),
            self.timeout_sec,
        )
        return StepOutcome("Category", "OK", f"created category {CATEGORY_NAME}")

    async def _ensure_channel(
        self,
        guild: discord.Guild,
        me: discord.Member | None,
        role: ChannelRole,
        report: ProvisioningReport,
    ) -> StepOutcome:
        step = f"Channel {role.channel_name}"
        category = report.category
        pool = category.text_channels if category is not None else guild.text_channels
        existing = discord.utils.get(pool, name=role.channel_name)
        if existing is not None:
            report.channels[role] = existing
            return StepOutcome(step, "OK", f"reused channel {role.channel_name}")
        channel = await bounded(
            guild.create_text_channel(
                role.channel_name,
                category=category,
                overwrites=self._overwrites(guild, me),
                topic=CHANNEL_TOPICS.get(role),
                reason=AUDIT_REASON,
            ),
            self.timeout_sec,
        )
        report.channels[role] = channel
        return StepOutcome(step, "OK", f"created channel {role.channel_name}")

    async def _record_channels(self, guild: discord.Guild, report: ProvisioningReport) -> None:
        if not report.channels:
            return

        def apply(record: GuildSettings) -> None:
            for role, channel in report.channels.items():
                record.channel_ids[role.value] = channel.id
            console = report.channels.get(ChannelRole.CONSOLE_LOGS)
            if console is not None:
                record.render_console_logs_channel_id = console.id

        await self.store.mutate(guild.id, apply)

    async def _ensure_role(self, guild: discord.Guild, report: ProvisioningReport) -> StepOutcome:
        existing = discord.utils.get(guild.roles, name=MANAGER_ROLE_NAME)
        if existing is not None:
            report.role = existing
            return StepOutcome("Role", "OK", f"reused role {MANAGER_ROLE_NAME}")
        report.role = await bounded(
            guild.create_role(
                name=MANAGER_ROLE_NAME,
                permissions=discord.Permissions(administrator=True),
                colour=discord.Colour.default(),
                reason=AUDIT_REASON,
            ),
            self.timeout_sec,
        )
        return StepOutcome("Role", "OK", f"created role {MANAGER_ROLE_NAME}")

    async def _assign_role(self, guild: discord.Guild, report: ProvisioningReport) -> StepOutcome:
        if report.role is None:
            return StepOutcome("Role assignment", "FAIL", "manager role unavailable")
        entry = await bounded(self._latest_bot_add(guild), self.timeout_sec)
        executor = getattr(entry, "user", None) if entry is not None else None
        if executor is None:
            self.logger.log("provision.no_bot_add_entry", guild_id=guild.id)
            return StepOutcome("Role assignment", "WARN", "no bot-add audit entry with an executor")
        member = guild.get_member(executor.id)
        if member is None:
            member = await bounded(guild.fetch_member(executor.id), self.timeout_sec)
        if report.role in member.roles:
            return StepOutcome("Role assignment", "OK", f"{member} already has {MANAGER_ROLE_NAME}")
        await bounded(member.add_roles(report.role, reason=AUDIT_REASON), self.timeout_sec)
        return StepOutcome("Role assignment", "OK", f"assigned {MANAGER_ROLE_NAME} to {member}")

    async def _latest_bot_add(self, guild: discord.Guild) -> Any | None:
        async for entry in guild.audit_logs(limit=1, action=discord.AuditLogAction.bot_add):
            return entry
        return None

    async def _post_summary(self, guild: discord.Guild, report: ProvisioningReport) -> None:
        channel = report.channels.get(ChannelRole.CONSOLE_LOGS)
        if channel is None:
            channel = self.resolver.resolve(guild, ChannelRole.CONSOLE_LOGS)
        if channel is None:
            self.logger.warn("provision.summary_undeliverable", guild_id=guild.id)
            return
        try:
            await bounded(channel.send(code_block("LOGGING", report.lines())), self.timeout_sec)
        except STEP_ERRORS as exc:
            self.logger.warn("provision.summary_failed", guild_id=guild.id, channel_id=channel.id, error=_describe(exc))
            return
        report.summary_channel_id = channel.id


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timed out"
    if isinstance(exc, discord.HTTPException):
        return f"{exc.status} {exc.text or type(exc).__name__}"
    return str(exc) or type(exc).__name__
