"""Message, embed and button builders for the KoG commands."""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import discord

from .kog import MapEntry, PlayerSnapshot, player_page_url

MAX_STARS = 5
MAP_LINES_PER_MESSAGE = 30
REGISTER_PREFIX = "kog-register-"


def star_rating(stars: int) -> str:
    stars = max(0, min(int(stars), MAX_STARS))
    return "★" * stars + "☆" * (MAX_STARS - stars)


def star_filter_label(star: int) -> str:
    return "not limited" if not star else star_rating(star)


def apply_star_filter(maps: Sequence[MapEntry], star: int) -> List[MapEntry]:
    if not star:
        return sorted(maps, key=lambda entry: entry.star)
    return [entry for entry in maps if entry.star == star]


def format_map_line(entry: MapEntry) -> str:
    return f"{star_rating(entry.star)}({entry.points}) {entry.map_name}"


def chunk_map_lines(
    maps: Iterable[MapEntry], size: int = MAP_LINES_PER_MESSAGE
) -> List[str]:
    lines = [format_map_line(entry) for entry in maps]
    return ["\n".join(lines[i : i + size]) for i in range(0, len(lines), size)]


def format_selection(difficulty: str, star: int, players: Sequence[str]) -> str:
    lines = [
        f"Difficulty: {difficulty}",
        f"Stars: {star_filter_label(star)}",
        "Players:",
    ]
    lines.extend(f"{i}. {name}" for i, name in enumerate(players, start=1))
    return "\n".join(lines)


def format_query_header(
    requester_mention: str, difficulty: str, star: int, players: Sequence[str]
) -> str:
    body = format_selection(difficulty, star, players)
    return f"{requester_mention} searched for maps none of these players finished\n```\n{body}\n```"


def registration_description(
    registration_id: str,
    user_mention: str,
    username: str,
    snapshot: Optional[PlayerSnapshot] = None,
) -> str:
    lines = [
        f"Registration: {registration_id}",
        f"User: {user_mention}",
        f"Name: {username}",
    ]
    if snapshot is not None:
        lines.append(f"Rank: {snapshot.rank}")
        lines.append(
            f"Points: {snapshot.total_points} ({snapshot.base_points} + {snapshot.season_points})"
        )
    return "\n".join(lines)


def review_embed(description: str) -> discord.Embed:
    return discord.Embed(
        title="Pending review", description=description, color=discord.Color.blue()
    )


def failed_registration_embed(description: str) -> discord.Embed:
    return discord.Embed(
        title="Failed registration",
        description=description,
        color=discord.Color.dark_red(),
    )


def decision_embed(
    title: str,
    description: str | None,
    color: discord.Color | None = None,
    footer: str | None = None,
    author: object | None = None,
) -> discord.Embed:
    embed = discord.Embed(title=title, description=description, color=color)
    if footer:
        embed.set_footer(text=footer)
    if author is not None:
        embed.set_author(
            name=getattr(author, "display_name", None) or str(author),
            icon_url=getattr(getattr(author, "display_avatar", None), "url", None),
        )
    return embed


def registration_custom_id(action: str, registration_id: str) -> str:
    return f"{REGISTER_PREFIX}{action}-{registration_id}"


def parse_registration_custom_id(custom_id: str) -> Optional[tuple[str, str]]:
    if not custom_id.startswith(REGISTER_PREFIX):
        return None
    action, _, registration_id = custom_id[len(REGISTER_PREFIX) :].partition("-")
    if action not in ("approve", "reject", "delete") or not registration_id:
        return None
    return action, registration_id


def review_view(registration_id: str, username: str) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="Approve",
            style=discord.ButtonStyle.success,
            custom_id=registration_custom_id("approve", registration_id),
        )
    )
    view.add_item(
        discord.ui.Button(
            label="Reject",
            style=discord.ButtonStyle.danger,
            custom_id=registration_custom_id("reject", registration_id),
        )
    )
    view.add_item(
        discord.ui.Button(
            label="View player", style=discord.ButtonStyle.link, url=player_page_url(username)
        )
    )
    return view


def _delete_button(registration_id: str) -> discord.ui.Button:
    return discord.ui.Button(
        label="Delete registration",
        style=discord.ButtonStyle.danger,
        custom_id=registration_custom_id("delete", registration_id),
    )


def delete_view(registration_id: str) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(_delete_button(registration_id))
    return view


def failed_registration_view(registration_id: str) -> discord.ui.View:
    """Log channel controls: moderators reject, the registrant deletes."""
    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="Reject",
            style=discord.ButtonStyle.secondary,
            custom_id=registration_custom_id("reject", registration_id),
        )
    )
    view.add_item(_delete_button(registration_id))
    return view


def player_info_embed(snapshot: PlayerSnapshot) -> discord.Embed:
    embed = discord.Embed(
        title=snapshot.username,
        url=player_page_url(snapshot.username),
        color=discord.Color.blue(),
    )
    embed.add_field(name="Rank", value=str(snapshot.rank), inline=True)
    embed.add_field(
        name="Points",
        value=f"{snapshot.total_points} ({snapshot.base_points} + {snapshot.season_points})",
        inline=True,
    )
    embed.add_field(
        name="Finished maps", value=str(len(snapshot.finished_maps)), inline=True
    )
    return embed
