from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Sequence

import discord

from .embeds import format_selection
from .query import MAX_QUERY_PLAYERS

OPTIONS_PER_SELECT = 25
# Discord allows five component rows; the last one holds the submit buttons.
MAX_PLAYER_SELECTS = 4


@dataclass
class PlayerSelection:
    requester_id: int
    difficulty: str
    star: int = 0
    players: List[str] = field(default_factory=list)

    @property
    def full(self) -> bool:
        return len(self.players) >= MAX_QUERY_PLAYERS

    def add(self, username: str) -> bool:
        if self.full or username in self.players:
            return False
        self.players.append(username)
        return True

    def content(self) -> str:
        return format_selection(self.difficulty, self.star, self.players)


SubmitHandler = Callable[[discord.Interaction, PlayerSelection, bool], Awaitable[None]]


class PlayerSelect(discord.ui.Select):
    def __init__(self, index: int, usernames: Sequence[str]):
        super().__init__(
            custom_id=f"player_selection_{index}",
            placeholder="Choose a player",
            min_values=1,
            max_values=1,
            options=[discord.SelectOption(label=name, value=name) for name in usernames],
            row=index,
        )

    async def callback(self, interaction: discord.Interaction):
        view = self.view
        view.selection.add(self.values[0])
        view.stop()
        await interaction.response.edit_message(
            content=view.selection.content(), view=view.rebuild()
        )


class SubmitButton(discord.ui.Button):
    def __init__(self, public: bool, disabled: bool):
        super().__init__(
            label="Submit publicly" if public else "Submit privately",
            style=discord.ButtonStyle.success,
            custom_id=f"search_unfinished_map:{'public' if public else 'private'}",
            disabled=disabled,
            row=MAX_PLAYER_SELECTS,
        )
        self.public = public

    async def callback(self, interaction: discord.Interaction):
        view = self.view
        view.stop()
        await view.on_submit(interaction, view.selection, self.public)


class UnfinishedMapSearchView(discord.ui.View):
    def __init__(
        self,
        selection: PlayerSelection,
        candidates: Sequence[str],
        on_submit: SubmitHandler,
        timeout: float = 600,
    ):
        super().__init__(timeout=timeout)
        self.selection = selection
        self.candidates = list(candidates)
        self.on_submit = on_submit

        if not selection.full:
            available = [name for name in self.candidates if name not in selection.players]
            limit = OPTIONS_PER_SELECT * MAX_PLAYER_SELECTS
            for start in range(0, min(len(available), limit), OPTIONS_PER_SELECT):
                chunk = available[start : start + OPTIONS_PER_SELECT]
                self.add_item(PlayerSelect(start // OPTIONS_PER_SELECT, chunk))
        no_players = not selection.players
        self.add_item(SubmitButton(public=True, disabled=no_players))
        self.add_item(SubmitButton(public=False, disabled=no_players))

    def rebuild(self) -> "UnfinishedMapSearchView":
        return UnfinishedMapSearchView(
            self.selection, self.candidates, self.on_submit, timeout=self.timeout or 600
        )

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self.selection.requester_id:
            await interaction.response.send_message(
                "Only the member who started this search can change it.",
                ephemeral=True,
            )
            return False
        return True
