from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Optional

import discord
from discord import app_commands
from discord.ext import commands

from .announcements import ChannelUnavailable, DiscordAnnouncementChannel, PublishFailure
from .config import Config, ConfigError, load_config
from .durations import InvalidDuration, parse_milliseconds
from .giveaway_manager import GiveawayError, GiveawayManager
from .keepalive import KeepaliveServer
from .moderation import (
    ModerationError,
    ModerationService,
    build_infractions_embed,
    build_userinfo_embed,
)
from .permissions import Tier, configured_roles, require_tier
from .storage import StoreFailure, Stores, open_stores


ENV_PATH = Path(".env")

log = logging.getLogger(__name__)


def _load_env_file(path: Path = ENV_PATH) -> None:
    if not path.exists():
        return
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return
    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip()
        if value and ((value[0] == value[-1]) and value.startswith(("'", '"'))):
            value = value[1:-1]
        os.environ.setdefault(key, value)


def configure_logging(level: str) -> None:
    console_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    root_logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_dir = Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_dir / "log.txt", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # discord.py's gateway chatter is noisy at DEBUG
    logging.getLogger("discord").setLevel(logging.INFO)


class WatcherBot(commands.Bot):
    def __init__(self, config: Config, stores: Stores) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True

        super().__init__(
            command_prefix=commands.when_mentioned_or(config.prefix),
            intents=intents,
            application_id=config.application_id,
        )
        self.config = config
        self.stores = stores
        self.announcements = DiscordAnnouncementChannel(
            self, entry_emoji=config.giveaways.entry_emoji
        )
        self.giveaways = GiveawayManager(config, self.announcements, stores.giveaways)
        self.moderation = ModerationService(self, config, stores.warnings)
        self.keepalive = (
            KeepaliveServer(config.keepalive) if config.keepalive.enabled else None
        )

    async def setup_hook(self) -> None:
        await self.stores.prepare()
        if self.keepalive is not None:
            try:
                await self.keepalive.start()
            except OSError:
                log.exception("Keep-alive server could not start; continuing without it.")
        for tier, role_id in configured_roles(self.config.roles):
            log.info("Role tier %s mapped to role %s", tier.value, role_id)
        await self.giveaways.restore()
        await self.tree.sync()
        dev_guild_id = self.config.development_guild_id
        if dev_guild_id:
            guild = discord.Object(dev_guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            log.info("Registered guild commands for %s", dev_guild_id)

    async def on_ready(self) -> None:
        log.info("Logged in as %s (%s)", self.user, self.user.id)  # type: ignore[union-attr]
        await self.change_presence(
            activity=discord.Activity(
                type=discord.ActivityType.listening, name="FSG WATCHER"
            )
        )

    async def on_command_error(
        self, ctx: commands.Context, error: commands.CommandError
    ) -> None:
        if isinstance(error, (commands.CommandNotFound, commands.NoPrivateMessage)):
            return
        if isinstance(error, commands.UserInputError) and ctx.command is not None:
            await ctx.reply(
                f"Usage: {self.config.prefix}{ctx.command.qualified_name} {ctx.command.signature}"
            )
            return
        log.error(
            "Prefix command %s failed",
            getattr(ctx.command, "qualified_name", "unknown"),
            exc_info=error,
        )

    async def close(self) -> None:
        await self.giveaways.close()
        await self.moderation.close()
        if self.keepalive is not None:
            await self.keepalive.stop()
        await self.stores.close()
        await super().close()


def build_bot(config_path: Path) -> WatcherBot:
    _load_env_file()
    config = load_config(config_path)
    configure_logging(config.logging.level)
    stores = open_stores(config.storage)
    return WatcherBot(config, stores)


async def start_giveaway(
    bot: WatcherBot,
    *,
    origin_channel_id: int,
    host: discord.abc.User,
    duration: str,
    winners: int,
    prize: str,
) -> str:
    """Run the giveaway start flow and return the text to show the host."""
    try:
        record = await bot.giveaways.start(
            origin_channel_id, duration, winners, prize, host.id, str(host)
        )
    except InvalidDuration:
        return "Invalid duration format."
    except ChannelUnavailable:
        return "Giveaway channel not found"
    except PublishFailure as exc:
        return f"Failed: {exc}"
    except StoreFailure:
        return "Failed: the giveaway could not be saved, so it was not started."
    except GiveawayError as exc:
        return str(exc)
    return f"🎉 Giveaway started in <#{record.channel_id}>"


def _member(user: discord.abc.User) -> Optional[discord.Member]:
    return user if isinstance(user, discord.Member) else None


def register_commands(bot: WatcherBot) -> None:
    roles = bot.config.roles
    moderation = bot.moderation

    async def denied(interaction: discord.Interaction, tier: Tier) -> bool:
        command_name = getattr(getattr(interaction, "command", None), "name", "unknown")
        error = require_tier(
            _member(interaction.user), tier, roles, command_name=command_name
        )
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return True
        return False

    async def respond(
        interaction: discord.Interaction, action: Awaitable[str], *, ephemeral: bool = False
    ) -> None:
        try:
            result = await action
        except ModerationError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        await interaction.response.send_message(result, ephemeral=ephemeral)

    # --- Slash commands ---------------------------------------------------

    @bot.tree.command(name="ping", description="Check bot latency")
    async def ping(interaction: discord.Interaction) -> None:
        await interaction.response.send_message(f"🏓 Pong! {round(bot.latency * 1000)}ms")

    @bot.tree.command(name="gstart", description="Start giveaway (staff only)")
    @app_commands.guild_only()
    @app_commands.describe(
        duration="10s/1m/1h/1d", winners="Winners", prize="Prize text"
    )
    async def gstart(
        interaction: discord.Interaction,
        duration: str,
        winners: app_commands.Range[int, 1, 100],
        prize: str,
    ) -> None:
        member = _member(interaction.user)
        if require_tier(member, Tier.STAFF, roles, command_name="gstart"):
            await interaction.response.send_message(
                "❌ Only staff can start giveaways", ephemeral=True
            )
            return
        await interaction.response.defer(ephemeral=True)
        message = await start_giveaway(
            bot,
            origin_channel_id=interaction.channel_id,  # type: ignore[arg-type]
            host=interaction.user,
            duration=duration,
            winners=winners,
            prize=prize,
        )
        await interaction.followup.send(message, ephemeral=True)

    @bot.tree.command(name="ban", description="Ban user (admin only)")
    @app_commands.guild_only()
    @app_commands.describe(user="Member to ban.", reason="Reason for the ban.")
    async def ban(
        interaction: discord.Interaction, user: discord.User, reason: Optional[str] = None
    ) -> None:
        if await denied(interaction, Tier.ADMIN):
            return
        await respond(interaction, moderation.ban(interaction.guild, interaction.user, user, reason))

    @bot.tree.command(name="kick", description="Kick user (admin only)")
    @app_commands.guild_only()
    @app_commands.describe(user="Member to kick.", reason="Reason for the kick.")
    async def kick(
        interaction: discord.Interaction, user: discord.User, reason: Optional[str] = None
    ) -> None:
        if await denied(interaction, Tier.ADMIN):
            return
        await respond(interaction, moderation.kick(interaction.guild, interaction.user, user, reason))

    @bot.tree.command(name="mute", description="Mute user (staff+)")
    @app_commands.guild_only()
    @app_commands.describe(
        user="Member to mute.",
        duration="Optional duration such as 10m or 1h; omit for an indefinite mute.",
        reason="Reason for the mute.",
    )
    async def mute(
        interaction: discord.Interaction,
        user: discord.User,
        duration: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        if await denied(interaction, Tier.STAFF):
            return
        await respond(
            interaction,
            moderation.mute(interaction.guild, interaction.user, user, duration, reason),
        )

    @bot.tree.command(name="unmute", description="Unmute user (staff+)")
    @app_commands.guild_only()
    @app_commands.describe(user="Member to unmute.")
    async def unmute(interaction: discord.Interaction, user: discord.User) -> None:
        if await denied(interaction, Tier.STAFF):
            return
        await respond(interaction, moderation.unmute(interaction.guild, interaction.user, user))

    @bot.tree.command(name="warn", description="Warn a user (mod+)")
    @app_commands.guild_only()
    @app_commands.describe(user="Member to warn.", reason="Reason for the warning.")
    async def warn(
        interaction: discord.Interaction, user: discord.User, reason: Optional[str] = None
    ) -> None:
        if await denied(interaction, Tier.MOD):
            return
        await respond(
            interaction,
            moderation.warn(interaction.guild, interaction.user, user, reason),
            ephemeral=True,
        )

    @bot.tree.command(name="infractions", description="Show user infractions")
    @app_commands.guild_only()
    @app_commands.describe(user="Member to inspect; defaults to yourself.")
    async def infractions(
        interaction: discord.Interaction, user: Optional[discord.User] = None
    ) -> None:
        target = user or interaction.user
        warnings = await moderation.infractions(interaction.guild, target)
        if not warnings:
            await interaction.response.send_message(
                f"{target} has no warnings.", ephemeral=True
            )
            return
        await interaction.response.send_message(
            embed=build_infractions_embed(target, warnings), ephemeral=True
        )

    @bot.tree.command(name="userinfo", description="User info")
    @app_commands.guild_only()
    @app_commands.describe(user="Member to inspect; defaults to yourself.")
    async def userinfo(
        interaction: discord.Interaction, user: Optional[discord.User] = None
    ) -> None:
        target = user or interaction.user
        guild = interaction.guild
        member = guild.get_member(target.id)
        if member is None:
            try:
                member = await guild.fetch_member(target.id)
            except (discord.NotFound, discord.Forbidden, discord.HTTPException):
                member = None
        await interaction.response.send_message(embed=build_userinfo_embed(target, member))

    @bot.tree.command(name="role-add", description="Add role to member")
    @app_commands.guild_only()
    @app_commands.describe(user="Member to update.", role="Role to add.")
    async def role_add(
        interaction: discord.Interaction, user: discord.User, role: discord.Role
    ) -> None:
        if await denied(interaction, Tier.STAFF):
            return
        await respond(
            interaction, moderation.role_add(interaction.guild, interaction.user, user, role)
        )

    @bot.tree.command(name="role-remove", description="Remove role from member")
    @app_commands.guild_only()
    @app_commands.describe(user="Member to update.", role="Role to remove.")
    async def role_remove(
        interaction: discord.Interaction, user: discord.User, role: discord.Role
    ) -> None:
        if await denied(interaction, Tier.STAFF):
            return
        await respond(
            interaction,
            moderation.role_remove(interaction.guild, interaction.user, user, role),
        )

    @bot.tree.command(name="role-create", description="Create a new role")
    @app_commands.guild_only()
    @app_commands.describe(name="Name of the new role.", color="Colour such as #ff0000 or gold.")
    async def role_create(
        interaction: discord.Interaction, name: str, color: Optional[str] = None
    ) -> None:
        if await denied(interaction, Tier.ADMIN):
            return
        await respond(
            interaction,
            moderation.role_create(interaction.guild, interaction.user, name, color),
        )

    @bot.tree.command(name="role-delete", description="Delete a role")
    @app_commands.guild_only()
    @app_commands.describe(role="Role to delete.")
    async def role_delete(interaction: discord.Interaction, role: discord.Role) -> None:
        if await denied(interaction, Tier.ADMIN):
            return
        await respond(
            interaction, moderation.role_delete(interaction.guild, interaction.user, role)
        )

    @bot.tree.command(name="clear", description="Bulk delete messages (mod+)")
    @app_commands.guild_only()
    @app_commands.describe(amount="How many recent messages to delete (max 100).")
    async def clear(
        interaction: discord.Interaction, amount: app_commands.Range[int, 1, 100]
    ) -> None:
        if await denied(interaction, Tier.MOD):
            return
        await interaction.response.defer(ephemeral=True)
        try:
            deleted = await moderation.clear(interaction.channel, amount)  # type: ignore[arg-type]
        except ModerationError as exc:
            await interaction.followup.send(str(exc), ephemeral=True)
            return
        await interaction.followup.send(f"🧹 Deleted {deleted} messages.", ephemeral=True)

    # --- Prefix commands --------------------------------------------------

    async def prefix_denied(ctx: commands.Context, tier: Tier) -> bool:
        error = require_tier(
            _member(ctx.author), tier, roles, command_name=f"prefix:{ctx.invoked_with}"
        )
        if error:
            await ctx.reply(error)
            return True
        return False

    async def prefix_respond(ctx: commands.Context, action: Awaitable[str]) -> None:
        try:
            result = await action
        except ModerationError as exc:
            result = str(exc)
        await ctx.reply(result)

    @bot.command(name="ping")
    async def ping_prefix(ctx: commands.Context) -> None:
        await ctx.reply(f"🏓 Pong! {round(bot.latency * 1000)}ms")

    @bot.command(name="gstart")
    @commands.guild_only()
    async def gstart_prefix(
        ctx: commands.Context,
        duration: Optional[str] = None,
        winners: Optional[int] = 1,
        *,
        prize: str = "",
    ) -> None:
        if require_tier(_member(ctx.author), Tier.STAFF, roles, command_name="prefix:gstart"):
            await ctx.reply("❌ Only staff can start giveaways")
            return
        if not duration or not prize.strip():
            await ctx.reply(f"Usage: {bot.config.prefix}gstart <duration> <winners> <prize>")
            return
        message = await start_giveaway(
            bot,
            origin_channel_id=ctx.channel.id,
            host=ctx.author,
            duration=duration,
            winners=winners if winners is not None else 1,
            prize=prize,
        )
        await ctx.reply(message)

    @bot.command(name="ban")
    @commands.guild_only()
    async def ban_prefix(
        ctx: commands.Context, user: discord.User, *, reason: Optional[str] = None
    ) -> None:
        if await prefix_denied(ctx, Tier.ADMIN):
            return
        await prefix_respond(ctx, moderation.ban(ctx.guild, ctx.author, user, reason))

    @bot.command(name="kick")
    @commands.guild_only()
    async def kick_prefix(
        ctx: commands.Context, user: discord.User, *, reason: Optional[str] = None
    ) -> None:
        if await prefix_denied(ctx, Tier.ADMIN):
            return
        await prefix_respond(ctx, moderation.kick(ctx.guild, ctx.author, user, reason))

    @bot.command(name="mute")
    @commands.guild_only()
    async def mute_prefix(
        ctx: commands.Context, user: discord.User, *, rest: str = ""
    ) -> None:
        """mute <user> [duration] [reason...]"""
        if await prefix_denied(ctx, Tier.STAFF):
            return
        duration, reason = split_duration(rest)
        await prefix_respond(
            ctx, moderation.mute(ctx.guild, ctx.author, user, duration, reason)
        )

    @bot.command(name="unmute")
    @commands.guild_only()
    async def unmute_prefix(ctx: commands.Context, user: discord.User) -> None:
        if await prefix_denied(ctx, Tier.STAFF):
            return
        await prefix_respond(ctx, moderation.unmute(ctx.guild, ctx.author, user))

    @bot.command(name="warn")
    @commands.guild_only()
    async def warn_prefix(
        ctx: commands.Context, user: discord.User, *, reason: Optional[str] = None
    ) -> None:
        if await prefix_denied(ctx, Tier.MOD):
            return
        await prefix_respond(ctx, moderation.warn(ctx.guild, ctx.author, user, reason))

    @bot.command(name="clear")
    @commands.guild_only()
    async def clear_prefix(ctx: commands.Context, amount: int = 10) -> None:
        if await prefix_denied(ctx, Tier.MOD):
            return
        try:
            deleted = await moderation.clear(ctx.channel, amount)  # type: ignore[arg-type]
        except ModerationError as exc:
            await ctx.send(str(exc))
            return
        await ctx.send(f"🧹 Deleted {deleted} messages.", delete_after=5)


def split_duration(text: str) -> tuple[Optional[str], Optional[str]]:
    """Split ``"10m spamming"`` into ``("10m", "spamming")`` when it leads with a duration."""
    parts = text.strip().split(maxsplit=1)
    if not parts:
        return None, None
    try:
        parse_milliseconds(parts[0])
    except InvalidDuration:
        return None, text.strip()
    return parts[0], (parts[1] if len(parts) > 1 else None)


async def main() -> None:
    parser = argparse.ArgumentParser(description="FSG Watcher moderation bot")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config") / "config.yaml",
        help="Path to the bot configuration file.",
    )
    args = parser.parse_args()

    try:
        bot = build_bot(args.config)
    except ConfigError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    register_commands(bot)

    async with bot:
        await bot.start(bot.config.token)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
