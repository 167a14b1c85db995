# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import logging
import time
from datetime import datetime, timezone

import discord
from discord import Color, Embed, Option
from discord import errors as discord_errors
from discord.ext import commands

from common import languages
from common.errors import StorageError

logger = logging.getLogger("babelcord.commands")

_LANGUAGE_CHOICES = [
    discord.OptionChoice(name=label, value=code) for label, code in languages.primary_choices()
]


class SyncCommands(commands.Cog):
    """
    Slash commands for managing translation sync groups.

    Usable by anyone listed in COMMAND_USERS, or, when that list is empty,
    by members with Manage Channels.
    """

    def __init__(self, bot: discord.Bot):
        self.bot = bot
        self.start_time = time.time()

    @property
    def relay(self):
        return self.bot.relay

    @property
    def allowed_users(self) -> list:
        return self.relay.config.COMMAND_USERS

    async def cog_check(self, ctx: discord.ApplicationContext):
        cmd_name = ctx.command.name if ctx.command else "unknown"
        if ctx.guild is None:
            await ctx.respond("This command can only be used in a server.", ephemeral=True)
            return False

        if self.allowed_users:
            allowed = ctx.user.id in self.allowed_users
        else:
            perms = getattr(ctx.user, "guild_permissions", None)
            allowed = bool(perms and perms.manage_channels)

        if allowed:
            logger.info("User %s executed the '%s' command.", ctx.user.id, cmd_name)
            return True
        await ctx.respond("You are not authorized to use this command.", ephemeral=True)
        logger.warning(
            "Unauthorized access: user %s attempted to run command '%s'", ctx.user.id, cmd_name
        )
        return False

    @commands.Cog.listener()
    async def on_application_command_error(self, interaction, error):
        orig = getattr(error, "original", None)
        err = orig or error

        if isinstance(err, (commands.CheckFailure, discord_errors.CheckFailure)):
            return

        cmd = interaction.command.name if interaction.command else "<unknown>"
        logger.exception("Error in command '%s':", cmd, exc_info=err)

    @commands.slash_command(
        name="sync_language",
        description="Add this channel to a translation sync group in the given language.",
    )
    async def sync_language(
        self,
        ctx: discord.ApplicationContext,
        language: Option(str, "Language of this channel", choices=_LANGUAGE_CHOICES),
        group: Option(str, "Channel group id to sync this channel with"),
    ):
        group = group.strip()
        if not group:
            return await ctx.respond("❌ Group id cannot be empty.", ephemeral=True)

        try:
            self.relay.storage.add_channel(ctx.guild.id, group, ctx.channel.id, language)
        except StorageError as e:
            logger.error("[⛔] Error saving sync language settings: %s", e)
            return await ctx.respond(
                "❌ Failed to save language synchronization settings. Please try again.",
                ephemeral=True,
            )

        logger.info(
            "[🌐] %s synced #%s into group %s as %s",
            ctx.user,
            ctx.channel.id,
            group,
            language,
            extra={"guild_id": ctx.guild.id, "channel_id": ctx.channel.id},
        )
        await ctx.respond(
            "✅ Language synchronized!\n"
            f"**Language:** {languages.language_name(language)} ({languages.native_name(language)})\n"
            f"**Channel Group:** {group}\n"
            f"**Channel:** <#{ctx.channel.id}>",
            ephemeral=True,
        )

    @commands.slash_command(
        name="sync_remove",
        description="Remove this channel from a translation sync group.",
    )
    async def sync_remove(
        self,
        ctx: discord.ApplicationContext,
        group: Option(str, "Channel group id to leave"),
    ):
        try:
            removed = self.relay.storage.remove_channel(ctx.guild.id, group.strip(), ctx.channel.id)
        except StorageError as e:
            logger.error("[⛔] Error updating sync settings: %s", e)
            return await ctx.respond(
                "❌ Failed to update synchronization settings. Please try again.", ephemeral=True
            )

        if not removed:
            return await ctx.respond(
                f"This channel is not part of group **{group}**.", ephemeral=True
            )
        if not self.relay.coordinator.sync_status(ctx.guild.id, ctx.channel.id)["is_synced"]:
            await self.relay.webhooks.delete(ctx.channel.id)
        await ctx.respond(f"✅ Removed <#{ctx.channel.id}> from group **{group}**.", ephemeral=True)

    @commands.slash_command(
        name="sync_status",
        description="Show the translation sync settings of this channel.",
    )
    async def sync_status(self, ctx: discord.ApplicationContext):
        try:
            status = self.relay.coordinator.sync_status(ctx.guild.id, ctx.channel.id)
        except StorageError as e:
            logger.error("[⛔] Error reading sync settings: %s", e)
            return await ctx.respond("❌ Could not read synchronization settings.", ephemeral=True)

        if not status["is_synced"]:
            return await ctx.respond("This channel is not synced.", ephemeral=True)

        code = status["language"]
        embed = Embed(title="🌐 Sync status", color=Color.blurple())
        embed.add_field(
            name="Language",
            value=f"{languages.language_name(code)} ({languages.native_name(code)})",
            inline=True,
        )
        embed.add_field(name="Groups", value=", ".join(status["groups"]) or "-", inline=True)
        await ctx.respond(embed=embed, ephemeral=True)

    @commands.slash_command(
        name="sync_stats",
        description="Show queue, emoji and avatar statistics.",
    )
    async def sync_stats(self, ctx: discord.ApplicationContext):
        stats = self.relay.stats()
        uptime = int(time.time() - self.start_time)
        hours, rem = divmod(uptime, 3600)
        minutes, seconds = divmod(rem, 60)

        queues = stats["queues"]
        backlog = sum(q["length"] for q in queues.values())
        busy = sum(1 for q in queues.values() if q["processing"])

        embed = Embed(
            title="📊 Babelcord stats",
            color=Color.blurple(),
            timestamp=datetime.now(timezone.utc),
        )
        embed.add_field(name="Uptime", value=f"{hours}h {minutes}m {seconds}s", inline=True)
        embed.add_field(name="Messages", value=str(stats["processed"]), inline=True)
        embed.add_field(
            name="Queues", value=f"{len(queues)} ({busy} busy, {backlog} pending)", inline=True
        )
        embed.add_field(
            name="Temporary emojis", value=str(stats["emojis"]["total_temporary"]), inline=True
        )
        embed.add_field(
            name="Avatar files", value=str(stats["avatars"]["pending_files"]), inline=True
        )
        embed.add_field(name="Webhooks", value=str(stats["webhooks"]["cached"]), inline=True)
        await ctx.respond(embed=embed, ephemeral=True)


def setup(bot: discord.Bot):
    bot.add_cog(SyncCommands(bot))
