from __future__ import annotations

import asyncio
import logging
from functools import partial
from logging.handlers import TimedRotatingFileHandler
from typing import Any, Optional

import discord
from discord import app_commands
from discord.ext import commands

from .config import BotConfig, load_config
from .embeds import (
    apply_star_filter,
    chunk_map_lines,
    decision_embed,
    delete_view,
    failed_registration_embed,
    failed_registration_view,
    format_query_header,
    parse_registration_custom_id,
    player_info_embed,
    registration_description,
    review_embed,
    review_view,
)
from .kog import KogClient, KogError, KogPlayerNotFound, player_page_url
from .models import KogModels, init_kog_db
from .query import Difficulty, QueryEngine
from .refresh import RefreshScheduler
from .results import Err, ErrorCategory
from .stores import MapCatalog, PlayerStore, RegistrationStore
from .views import PlayerSelection, UnfinishedMapSearchView
from .workflow import KogLike, RegistrationWorkflow

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# Default to INFO until the configured level is applied at startup
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
LOGGER = logging.getLogger(__name__)


def user_label(
    user_id: int,
    member: Any | None = None,
    players: PlayerStore | None = None,
) -> str:
    name: str | None = None
    if member and getattr(member, "display_name", None):
        name = getattr(member, "display_name")
    if not name and players:
        rec = players.get_by_discord_id(user_id)
        if rec:
            name = rec.username
    return f"{name} ({user_id})" if name else str(user_id)


def member_can_moderate(member: Any) -> bool:
    perms = getattr(member, "guild_permissions", None)
    if perms is None:
        return False
    return bool(perms.administrator or perms.manage_guild or perms.manage_roles)


def has_member_role(member: Any, role_name: str) -> bool:
    return any(getattr(role, "name", None) == role_name for role in getattr(member, "roles", []))


def find_role(guild: Any, role_name: str) -> Any | None:
    if guild is None:
        return None
    for role in guild.roles:
        if role.name == role_name:
            return role
    return None


def _message_description(interaction: discord.Interaction) -> Optional[str]:
    message = getattr(interaction, "message", None)
    embeds = getattr(message, "embeds", None) or []
    return embeds[0].description if embeds else None


def _failure_text(prefix: str, error: Err) -> str:
    return f"{prefix}: {error.message} {error.user_hint()}"


class KogBot(commands.Bot):
    def __init__(
        self,
        config: BotConfig,
        client: KogLike | None = None,
        models: KogModels | None = None,
    ):
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.client = client or KogClient()
        self.models = models or init_kog_db(config.database_path)
        self.players = PlayerStore(self.models)
        self.registrations = RegistrationStore(self.models)
        self.catalog = MapCatalog(self.models)
        self.workflow = RegistrationWorkflow(
            self.models, self.players, self.registrations, self.client
        )
        self.query_engine = QueryEngine(self.players, self.catalog)
        self.refresher = RefreshScheduler(
            self.players,
            self.catalog,
            self.client,
            concurrency=config.refresh_concurrency,
            timezone_name=config.refresh_timezone,
        )
        self.refresh_task: asyncio.Task[None] | None = None

    async def close(self) -> None:
        if self.refresh_task:
            self.refresh_task.cancel()
            try:
                await self.refresh_task
            except asyncio.CancelledError:
                pass
        await super().close()
        close_client = getattr(self.client, "close", None)
        if close_client:
            await close_client()
        self.models.db.close()

    async def setup_hook(self) -> None:
        await self._sync_commands()
        self.refresh_task = self.loop.create_task(self._refresh_loop())

    async def _sync_commands(self):
        try:
            if self.config.guild_id:
                guild = discord.Object(id=self.config.guild_id)
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
                LOGGER.info("Synced application commands to guild %s", guild.id)
            else:
                await self.tree.sync()
                LOGGER.info("Synced application commands globally")
        except Exception as exc:
            LOGGER.warning("Failed to sync application commands: %s", exc)

    async def _refresh_loop(self):
        await self.wait_until_ready()
        await self.refresher.run()

    async def on_ready(self):
        LOGGER.info("Bot ready as %s", self.user)
        if self.catalog.count() == 0:
            LOGGER.info("Map catalog is empty; fetching it now")
            LOGGER.info("Startup map refresh: %s", await self.run_map_refresh())

    def configured_channel(self, channel_id: int | None) -> Any | None:
        if not channel_id:
            return None
        channel = self.get_channel(channel_id)
        if channel is None:
            LOGGER.warning("Configured channel %s not found", channel_id)
        return channel

    async def run_map_refresh(self) -> str:
        try:
            count = await self.refresher.update_map_data()
        except KogError as exc:
            LOGGER.warning("Map refresh failed: %s", exc)
            return f"Map refresh failed: {exc}"
        return f"Updated {count} maps"

    async def welcome_member(self, guild: Any, discord_user_id: int):
        member = guild.get_member(discord_user_id) if guild else None
        role = find_role(guild, self.config.member_role_name)
        if member and role:
            try:
                await member.add_roles(role, reason="KoG registration approved")
            except discord.HTTPException as exc:
                LOGGER.warning(
                    "Failed adding role %s to %s: %s",
                    role.name,
                    user_label(discord_user_id, member),
                    exc,
                )
        elif not role:
            LOGGER.warning(
                "Role %s not found; cannot grant it to %s",
                self.config.member_role_name,
                discord_user_id,
            )
        channel = self.configured_channel(self.config.command_channel_id)
        if channel:
            try:
                await channel.send(f"<@{discord_user_id}>, welcome to KoG!")
            except discord.HTTPException as exc:
                LOGGER.warning(
                    "Failed sending welcome for %s: %s", discord_user_id, exc
                )


async def handle_review_button(
    bot: KogBot, interaction: discord.Interaction, action: str, registration_id: str
):
    if not member_can_moderate(interaction.user):
        await interaction.response.send_message(
            "Only moderators can review registrations.", ephemeral=True
        )
        return
    await interaction.response.defer()
    description = _message_description(interaction)
    await interaction.edit_original_response(
        embed=decision_embed("Processing", description, author=interaction.user),
        view=None,
    )
    LOGGER.info(
        "Review %s of registration %s by %s",
        action,
        registration_id,
        user_label(interaction.user.id, interaction.user, bot.players),
    )
    if action == "approve":
        result = await bot.workflow.approve_registration(
            interaction.user.id, registration_id
        )
    else:
        result = await bot.workflow.reject_registration(
            interaction.user.id, registration_id
        )

    view = None
    welcome_user_id = None
    if isinstance(result, Err):
        embed = decision_embed(
            "Review failed",
            description,
            discord.Color.orange(),
            footer=f"Reason: {result.message} {result.user_hint()}",
            author=interaction.user,
        )
        # Provider or store trouble is temporary, keep the buttons for a retry.
        if result.category in (ErrorCategory.PROVIDER, ErrorCategory.STORE):
            registration = bot.registrations.get(registration_id)
            if registration is not None:
                view = review_view(registration_id, registration.claimed_username)
    elif action == "approve":
        embed = decision_embed(
            "Approved", description, discord.Color.green(), author=interaction.user
        )
        welcome_user_id = result.value.discord_user_id
    else:
        embed = decision_embed(
            "Rejected", description, discord.Color.red(), author=interaction.user
        )
    # The decision is committed; settle the review message before any greeting.
    await interaction.edit_original_response(embed=embed, view=view)
    if welcome_user_id is not None:
        await bot.welcome_member(interaction.guild, welcome_user_id)


async def handle_delete_button(
    bot: KogBot, interaction: discord.Interaction, registration_id: str
):
    await interaction.response.defer()
    result = await bot.workflow.delete_registration(interaction.user.id, registration_id)
    if isinstance(result, Err):
        await interaction.followup.send(
            _failure_text("Could not delete the registration", result), ephemeral=True
        )
        return
    embed = decision_embed(
        "Deleted",
        _message_description(interaction),
        discord.Color.dark_red(),
        author=interaction.user,
    )
    await interaction.edit_original_response(content=None, embed=embed, view=None)


async def run_unfinished_map_search(
    bot: KogBot,
    interaction: discord.Interaction,
    selection: PlayerSelection,
    public: bool,
):
    await interaction.response.edit_message(content="Search complete.", view=None)
    ephemeral = not public
    await interaction.followup.send(
        format_query_header(
            interaction.user.mention,
            selection.difficulty,
            selection.star,
            selection.players,
        ),
        ephemeral=ephemeral,
    )
    result = bot.query_engine.unfinished_maps_among(
        selection.players, selection.difficulty
    )
    if isinstance(result, Err):
        await interaction.followup.send(
            _failure_text("Search failed", result), ephemeral=True
        )
        return
    chunks = chunk_map_lines(apply_star_filter(result.value, selection.star))
    if not chunks:
        await interaction.followup.send(
            "Every matching map has been finished by at least one of these players.",
            ephemeral=ephemeral,
        )
        return
    for chunk in chunks:
        await interaction.followup.send(chunk, ephemeral=ephemeral)


async def route_component_interaction(bot: KogBot, interaction: discord.Interaction):
    if interaction.type != discord.InteractionType.component:
        return
    custom_id = (interaction.data or {}).get("custom_id", "")
    parsed = parse_registration_custom_id(custom_id)
    if not parsed:
        return
    action, registration_id = parsed
    if action == "delete":
        await handle_delete_button(bot, interaction, registration_id)
    else:
        await handle_review_button(bot, interaction, action, registration_id)


# Command registrations
async def setup_commands(bot: KogBot):
    tree = bot.tree

    async def require_owner(interaction: discord.Interaction) -> bool:
        if await bot.is_owner(interaction.user):
            return True
        await interaction.response.send_message(
            "Only the bot owner can use this command.", ephemeral=True
        )
        return False

    @bot.listen("on_interaction")
    async def log_app_command(interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.application_command:
            return
        cmd = interaction.command
        data = getattr(interaction, "namespace", None)
        try:
            payload = vars(data) if data else {}
        except Exception:
            payload = str(data)
        uid = int(getattr(interaction.user, "id", 0) or 0)
        LOGGER.info(
            "Slash command %s by %s with options %s",
            cmd.qualified_name if cmd else "unknown",
            user_label(uid, interaction.user, bot.players),
            payload,
        )

    @bot.listen("on_interaction")
    async def registration_buttons(interaction: discord.Interaction):
        try:
            await route_component_interaction(bot, interaction)
        except Exception as exc:
            LOGGER.exception("Registration button failed: %s", exc)

    @tree.error
    async def on_app_command_error(
        interaction: discord.Interaction, error: app_commands.AppCommandError
    ):
        if isinstance(error, app_commands.CheckFailure):
            if not interaction.response.is_done():
                await interaction.response.send_message(
                    "You do not have permission to use this command.",
                    ephemeral=True,
                )
            return
        LOGGER.exception("App command error: %s", error)
        message = f"Command failed: {error}"
        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except Exception as exc:
            LOGGER.warning("Failed sending error response for command: %s", exc)

    @tree.command(name="register", description="Register your KoG account")
    @app_commands.describe(username="Your player name on kog.tw")
    async def register(interaction: discord.Interaction, username: str):
        await interaction.response.defer(ephemeral=True, thinking=True)
        result = await bot.workflow.register(interaction.user.id, username)
        if isinstance(result, Err):
            await interaction.followup.send(
                _failure_text("Could not register", result), ephemeral=True
            )
            return
        registration_id = result.value
        username = username.strip()
        try:
            snapshot = await bot.client.fetch_player(username)
        except KogError as exc:
            LOGGER.warning(
                "Could not confirm registration %s (%s): %s",
                registration_id,
                username,
                exc,
            )
            snapshot = None
        description = registration_description(
            registration_id, interaction.user.mention, username, snapshot
        )
        log_channel = bot.configured_channel(bot.config.log_channel_id)

        if snapshot is None:
            text = (
                f"Registration failed: no KoG data was found for `{username}`. "
                "Check the name, then delete this registration and try again."
            )
            if log_channel:
                text += " A moderator can also reject it for you."
            await interaction.followup.send(
                text, view=delete_view(registration_id), ephemeral=True
            )
            if log_channel:
                await log_channel.send(
                    embed=failed_registration_embed(description),
                    view=failed_registration_view(registration_id),
                )
            return

        if not log_channel:
            LOGGER.warning(
                "No log channel available; registration %s has no review message",
                registration_id,
            )
            await interaction.followup.send(
                "Registration could not be sent for review because no review "
                "channel is configured. Delete it and contact a moderator.",
                view=delete_view(registration_id),
                ephemeral=True,
            )
            return

        await interaction.followup.send(
            f"Registration submitted! Please wait for a moderator.\nName: {username}",
            ephemeral=True,
        )
        await log_channel.send(
            embed=review_embed(description),
            view=review_view(registration_id, username),
        )

    @tree.command(name="unregister", description="Remove your KoG registration")
    async def unregister(interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True, thinking=True)
        member = interaction.user
        result = await bot.workflow.unregister(member.id)
        if isinstance(result, Err):
            await interaction.followup.send(
                _failure_text("Could not unregister", result), ephemeral=True
            )
            return
        role = find_role(interaction.guild, bot.config.member_role_name)
        if role and hasattr(member, "remove_roles"):
            try:
                await member.remove_roles(role, reason="KoG unregister")
            except discord.HTTPException as exc:
                LOGGER.warning(
                    "Failed removing role from %s: %s", user_label(member.id, member), exc
                )
        await interaction.followup.send("You are no longer registered.", ephemeral=True)

    @tree.command(name="player_info", description="Look up a player on kog.tw")
    @app_commands.describe(username="Player name on kog.tw")
    async def player_info(interaction: discord.Interaction, username: str):
        username = username.strip()
        await interaction.response.defer(thinking=True)
        try:
            snapshot = await bot.client.fetch_player(username)
        except KogPlayerNotFound:
            await interaction.followup.send(f"No KoG player named `{username}`.")
            return
        except KogError as exc:
            LOGGER.warning("Player lookup for %s failed: %s", username, exc)
            await interaction.followup.send(
                "KoG could not be reached. Please try again later."
            )
            return
        embed = player_info_embed(snapshot)
        player = bot.players.get_by_username(username)
        if player is not None:
            embed.add_field(
                name="Discord", value=f"<@{player.discord_user_id}>", inline=False
            )
        view = discord.ui.View()
        view.add_item(
            discord.ui.Button(
                label="View on kog.tw",
                style=discord.ButtonStyle.link,
                url=player_page_url(username),
            )
        )
        await interaction.followup.send(embed=embed, view=view)

    @tree.command(
        name="unfinished_maps",
        description="(KoG only) Find maps none of up to 25 players have finished",
    )
    @app_commands.describe(
        difficulty="Map difficulty", star="Star rating, 0 for any rating"
    )
    async def unfinished_maps(
        interaction: discord.Interaction,
        difficulty: Difficulty,
        star: app_commands.Range[int, 0, 5] = 0,
    ):
        member = interaction.user
        if not has_member_role(member, bot.config.member_role_name):
            await interaction.response.send_message(
                f"Only members with the {bot.config.member_role_name} role can use this command.",
                ephemeral=True,
            )
            return
        channel_id = bot.config.command_channel_id
        if channel_id and interaction.channel_id != channel_id:
            await interaction.response.send_message(
                f"Please use this command in <#{channel_id}>.", ephemeral=True
            )
            return
        selection = PlayerSelection(
            requester_id=member.id, difficulty=difficulty.value, star=int(star)
        )
        view = UnfinishedMapSearchView(
            selection,
            bot.query_engine.registered_usernames(),
            partial(run_unfinished_map_search, bot),
        )
        await interaction.response.send_message(
            selection.content(), view=view, ephemeral=True
        )

    @tree.command(
        name="update_all_user_data",
        description="(Owner only) Refresh every registered player now",
    )
    async def update_all_user_data(interaction: discord.Interaction):
        if not await require_owner(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        summary = await bot.refresher.update_all_user_data()
        await interaction.followup.send(str(summary), ephemeral=True)

    @tree.command(
        name="update_map_data",
        description="(Owner only) Refresh the map catalog now",
    )
    async def update_map_data(interaction: discord.Interaction):
        if not await require_owner(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        await interaction.followup.send(await bot.run_map_refresh(), ephemeral=True)


def configure_logging(config: BotConfig):
    root = logging.getLogger()
    root.setLevel(config.log_level)
    LOGGER.setLevel(config.log_level)
    if config.log_file:
        handler = TimedRotatingFileHandler(
            config.log_file, when="midnight", backupCount=30, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


async def main():
    bot_config = load_config()
    configure_logging(bot_config)
    bot = KogBot(bot_config)
    await setup_commands(bot)
    await bot.start(bot_config.token)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
