import asyncio
from types import SimpleNamespace

import discord

from kogbot.bot import (
    KogBot,
    route_component_interaction,
    run_unfinished_map_search,
    setup_commands,
)
from kogbot.config import BotConfig
from kogbot.embeds import registration_custom_id
from kogbot.models import init_kog_db
from kogbot.query import Difficulty
from kogbot.views import PlayerSelection
from tests.fakes import (
    FakeChannel,
    FakeGuild,
    FakeInteraction,
    FakeKog,
    FakeMember,
    FakePermissions,
    FakeRole,
    fake_message,
    make_map,
    make_snapshot,
)

LOG_CHANNEL = 10
COMMAND_CHANNEL = 20


def capture_commands(tree):
    captured = {}

    def command(*args, **kwargs):
        def decorator(func):
            captured[kwargs.get("name") or func.__name__] = func
            return func

        return decorator

    tree.command = command
    tree.error = lambda *args, **kwargs: (lambda func: func)
    return captured


class Harness:
    def __init__(self, tmp_path, kog=None, log_channel_id=LOG_CHANNEL):
        config = BotConfig(
            token="dummy",
            log_level="INFO",
            database_path=str(tmp_path / "kog.db"),
            log_channel_id=log_channel_id,
            command_channel_id=COMMAND_CHANNEL,
        )
        self.kog = kog or FakeKog(
            players={
                "Kobra": make_snapshot("Kobra", finished=["M1"], rank=3),
                "Zeta": make_snapshot("Zeta", finished=["M2"]),
            },
            maps=[make_map("M1"), make_map("M2"), make_map("M3", star=1)],
        )
        self.bot = KogBot(config, client=self.kog, models=init_kog_db(config.database_path))
        self.channels = {
            LOG_CHANNEL: FakeChannel(LOG_CHANNEL),
            COMMAND_CHANNEL: FakeChannel(COMMAND_CHANNEL),
        }
        self.bot.get_channel = self.channels.get
        self.role = FakeRole(id=500, name="KoG")
        self.user = FakeMember(1, display_name="Runner")
        self.moderator = FakeMember(
            2,
            display_name="Mod",
            guild_permissions=FakePermissions(manage_roles=True),
        )
        self.guild = FakeGuild(
            id=999,
            roles=[self.role],
            members={1: self.user, 2: self.moderator},
        )
        self.commands = {}

    async def setup(self):
        self.commands = capture_commands(self.bot.tree)
        await setup_commands(self.bot)

    def close(self):
        self.bot.models.db.close()

    @property
    def log_messages(self):
        return self.channels[LOG_CHANNEL].messages

    @property
    def welcome_messages(self):
        return self.channels[COMMAND_CHANNEL].messages

    def interaction(self, user, **kwargs):
        kwargs.setdefault("channel_id", COMMAND_CHANNEL)
        return FakeInteraction(user, guild=self.guild, **kwargs)

    async def click(self, user, action, registration_id):
        interaction = self.interaction(
            user,
            custom_id=registration_custom_id(action, registration_id),
            message=fake_message(f"Registration: {registration_id}"),
        )
        await route_component_interaction(self.bot, interaction)
        return interaction


def pending_id(harness):
    return harness.bot.registrations.pending_for(harness.user.id).id


def test_register_and_approve_grants_role(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        register = harness.interaction(harness.user)
        await harness.commands["register"](register, "Kobra")
        registration_id = pending_id(harness)
        click = await harness.click(harness.moderator, "approve", registration_id)
        return register, click

    register, click = asyncio.run(scenario())

    assert register.followup.contents[0].startswith("Registration submitted!")
    review = harness.log_messages[0]
    assert review["embed"].title == "Pending review"
    assert "Rank: 3" in review["embed"].description
    assert review["view"] is not None
    assert click.original_edits[0]["embed"].title == "Processing"
    assert click.original_edits[-1]["embed"].title == "Approved"
    assert harness.bot.players.get_by_discord_id(1).username == "Kobra"
    assert harness.role in harness.user.roles
    assert harness.welcome_messages[0]["content"] == "<@1>, welcome to KoG!"
    harness.close()


def test_register_twice_reports_pending(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        await harness.commands["register"](harness.interaction(harness.user), "Kobra")
        again = harness.interaction(harness.user)
        await harness.commands["register"](again, "Zeta")
        return again

    again = asyncio.run(scenario())

    assert again.followup.messages[0]["ephemeral"] is True
    assert "still waiting for a moderator" in again.followup.contents[0]
    assert len(harness.log_messages) == 1
    harness.close()


def test_unknown_player_registration_offers_delete(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        register = harness.interaction(harness.user)
        await harness.commands["register"](register, "Ghost")
        registration_id = pending_id(harness)
        stranger = await harness.click(harness.moderator, "delete", registration_id)
        owner = await harness.click(harness.user, "delete", registration_id)
        return register, registration_id, stranger, owner

    register, registration_id, stranger, owner = asyncio.run(scenario())

    assert register.followup.contents[0].startswith("Registration failed")
    assert register.followup.messages[0]["view"] is not None
    assert harness.log_messages[0]["embed"].title == "Failed registration"
    assert stranger.original_edits == []
    assert stranger.followup.messages[0]["ephemeral"] is True
    assert owner.original_edits[-1]["embed"].title == "Deleted"
    assert harness.bot.registrations.get(registration_id) is None
    harness.close()


def test_moderator_rejects_failed_registration_so_user_can_retry(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        await harness.commands["register"](harness.interaction(harness.user), "Ghost")
        registration_id = pending_id(harness)
        rejected = await harness.click(harness.moderator, "reject", registration_id)
        retry = harness.interaction(harness.user)
        await harness.commands["register"](retry, "Kobra")
        return registration_id, rejected, retry

    registration_id, rejected, retry = asyncio.run(scenario())

    failed_view = harness.log_messages[0]["view"]
    custom_ids = [item.custom_id for item in failed_view.children]
    assert registration_custom_id("reject", registration_id) in custom_ids
    assert registration_custom_id("delete", registration_id) in custom_ids
    assert rejected.original_edits[-1]["embed"].title == "Rejected"
    assert not harness.bot.registrations.get(registration_id).is_pending
    assert retry.followup.contents[0].startswith("Registration submitted!")
    harness.close()


def test_register_without_log_channel_offers_delete(tmp_path):
    harness = Harness(tmp_path, log_channel_id=None)

    async def scenario():
        await harness.setup()
        register = harness.interaction(harness.user)
        await harness.commands["register"](register, "Kobra")
        owner = await harness.click(harness.user, "delete", pending_id(harness))
        again = harness.interaction(harness.user)
        await harness.commands["register"](again, "Kobra")
        return register, owner, again

    register, owner, again = asyncio.run(scenario())

    assert "no review channel" in register.followup.contents[0]
    assert register.followup.messages[0]["view"] is not None
    assert owner.original_edits[-1]["embed"].title == "Deleted"
    assert "no review channel" in again.followup.contents[0]
    harness.close()


class BrokenChannel(FakeChannel):
    async def send(self, content=None, embed=None, view=None, **kwargs):
        raise discord.HTTPException(
            SimpleNamespace(status=500, reason="Server Error"), "send failed"
        )


def test_approval_settles_review_when_welcome_fails(tmp_path):
    harness = Harness(tmp_path)
    harness.channels[COMMAND_CHANNEL] = BrokenChannel(COMMAND_CHANNEL)

    async def scenario():
        await harness.setup()
        await harness.commands["register"](harness.interaction(harness.user), "Kobra")
        return await harness.click(harness.moderator, "approve", pending_id(harness))

    click = asyncio.run(scenario())

    assert click.original_edits[-1]["embed"].title == "Approved"
    assert harness.bot.players.get_by_discord_id(1).username == "Kobra"
    assert harness.role in harness.user.roles
    harness.close()


def test_review_requires_moderator(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        await harness.commands["register"](harness.interaction(harness.user), "Kobra")
        return await harness.click(harness.user, "approve", pending_id(harness))

    click = asyncio.run(scenario())

    assert click.response.messages[0]["ephemeral"] is True
    assert click.original_edits == []
    assert harness.bot.players.get_by_discord_id(1) is None
    harness.close()


def test_review_failure_keeps_buttons_for_retry(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        await harness.commands["register"](harness.interaction(harness.user), "Kobra")
        registration_id = pending_id(harness)
        harness.kog.failing.add("Kobra")
        failed = await harness.click(harness.moderator, "approve", registration_id)
        harness.kog.failing.clear()
        retried = await harness.click(harness.moderator, "approve", registration_id)
        return failed, retried

    failed, retried = asyncio.run(scenario())

    final = failed.original_edits[-1]
    assert final["embed"].title == "Review failed"
    assert "try again later" in final["embed"].footer.text
    assert final["view"] is not None
    assert retried.original_edits[-1]["embed"].title == "Approved"
    harness.close()


def test_reject_then_approve_is_refused(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        await harness.commands["register"](harness.interaction(harness.user), "Kobra")
        registration_id = pending_id(harness)
        rejected = await harness.click(harness.moderator, "reject", registration_id)
        approved = await harness.click(harness.moderator, "approve", registration_id)
        return rejected, approved

    rejected, approved = asyncio.run(scenario())

    assert rejected.original_edits[-1]["embed"].title == "Rejected"
    assert approved.original_edits[-1]["embed"].title == "Review failed"
    assert approved.original_edits[-1]["view"] is None
    assert harness.role not in harness.user.roles
    harness.close()


def test_unregister_removes_role(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        await harness.commands["register"](harness.interaction(harness.user), "Kobra")
        await harness.click(harness.moderator, "approve", pending_id(harness))
        first = harness.interaction(harness.user)
        await harness.commands["unregister"](first)
        second = harness.interaction(harness.user)
        await harness.commands["unregister"](second)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.followup.contents == ["You are no longer registered."]
    assert harness.role.id in harness.user.removed_roles
    assert second.followup.contents[0].startswith("Could not unregister")
    harness.close()


def test_unfinished_maps_checks_role_and_channel(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        command = harness.commands["unfinished_maps"]
        no_role = harness.interaction(harness.user)
        await command(no_role, Difficulty.HARD, 0)
        harness.user.roles.append(harness.role)
        wrong_channel = harness.interaction(harness.user, channel_id=30)
        await command(wrong_channel, Difficulty.HARD, 0)
        allowed = harness.interaction(harness.user)
        await command(allowed, Difficulty.HARD, 3)
        return no_role, wrong_channel, allowed

    no_role, wrong_channel, allowed = asyncio.run(scenario())

    assert "KoG role" in no_role.response.messages[0]["content"]
    assert f"<#{COMMAND_CHANNEL}>" in wrong_channel.response.messages[0]["content"]
    sent = allowed.response.messages[0]
    assert sent["ephemeral"] is True
    assert sent["content"].startswith("Difficulty: Hard\nStars: ★★★☆☆")
    assert sent["view"] is not None
    harness.close()


def test_unfinished_map_search_posts_results(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        await harness.bot.refresher.update_map_data()
        harness.bot.players.create(1, "Kobra", make_snapshot("Kobra", finished=["M1"]))
        harness.bot.players.create(3, "Zeta", make_snapshot("Zeta", finished=["M2"]))
        selection = PlayerSelection(
            requester_id=1, difficulty="Hard", players=["Kobra", "Zeta"]
        )
        submit = harness.interaction(harness.user)
        await run_unfinished_map_search(harness.bot, submit, selection, public=True)
        return submit

    submit = asyncio.run(scenario())

    assert submit.response.edits[0]["content"] == "Search complete."
    header, body = submit.followup.messages
    assert "Kobra" in header["content"] and header["ephemeral"] is False
    assert body["content"] == "★☆☆☆☆(12) M3"
    harness.close()


def test_owner_commands_require_owner(tmp_path):
    harness = Harness(tmp_path)
    owner = {"value": False}

    async def is_owner(user):
        return owner["value"]

    harness.bot.is_owner = is_owner

    async def scenario():
        await harness.setup()
        denied = harness.interaction(harness.user)
        await harness.commands["update_map_data"](denied)
        owner["value"] = True
        maps = harness.interaction(harness.user)
        await harness.commands["update_map_data"](maps)
        harness.bot.players.create(1, "Kobra", make_snapshot("Kobra"))
        players = harness.interaction(harness.user)
        await harness.commands["update_all_user_data"](players)
        return denied, maps, players

    denied, maps, players = asyncio.run(scenario())

    assert denied.response.messages[0]["content"] == "Only the bot owner can use this command."
    assert maps.followup.contents == ["Updated 3 maps"]
    assert players.followup.contents == ["Updated 1 players, skipped: 0, failures: 0"]
    harness.close()


def test_player_info_reports_unknown_player(tmp_path):
    harness = Harness(tmp_path)

    async def scenario():
        await harness.setup()
        known = harness.interaction(harness.user)
        await harness.commands["player_info"](known, "Kobra")
        unknown = harness.interaction(harness.user)
        await harness.commands["player_info"](unknown, "Ghost")
        return known, unknown

    known, unknown = asyncio.run(scenario())

    assert known.followup.messages[0]["embed"].title == "Kobra"
    assert unknown.followup.contents == ["No KoG player named `Ghost`."]
    harness.close()
