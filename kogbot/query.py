from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import Dict, Iterable, List

from peewee import DatabaseError

from .kog import MapEntry
from .results import Err, ErrorKind, Ok, Result
from .stores import MapCatalog, PlayerStore

LOGGER = logging.getLogger(__name__)

MAX_QUERY_PLAYERS = 25


class Difficulty(str, Enum):
    EASY = "Easy"
    MAIN = "Main"
    HARD = "Hard"
    INSANE = "Insane"
    EXTREME = "Extreme"
    MOD = "Mod"


def _dedupe(usernames: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for name in usernames:
        name = name.strip()
        if name:
            seen.setdefault(name, None)
    return list(seen)


class QueryEngine:
    def __init__(self, players: PlayerStore, catalog: MapCatalog):
        self.players = players
        self.catalog = catalog

    def registered_usernames(self) -> List[str]:
        return self.players.usernames()

    def unfinished_maps_among(
        self, usernames: Iterable[str], difficulty: Difficulty | str
    ) -> Result[List[MapEntry]]:
        """Maps of ``difficulty`` that none of ``usernames`` has finished."""
        difficulty_value = (
            difficulty.value if isinstance(difficulty, Difficulty) else str(difficulty)
        )
        names = _dedupe(usernames)
        if not names:
            return Err(ErrorKind.NO_PLAYERS, "Pick at least one player.")
        if len(names) > MAX_QUERY_PLAYERS:
            return Err(
                ErrorKind.TOO_MANY_PLAYERS,
                f"At most {MAX_QUERY_PLAYERS} players can be compared at once.",
            )

        try:
            players = []
            for name in names:
                player = self.players.get_by_username(name)
                if player is None:
                    return Err(
                        ErrorKind.PLAYER_NOT_FOUND, f"No registered player named '{name}'."
                    )
                players.append(player)

            catalog_maps = self.catalog.maps_by_difficulty(difficulty_value)
            unfinished_sets = []
            for player in players:
                finished = self.players.finished_map_names(player)
                unfinished_sets.append(
                    [entry for entry in catalog_maps if entry.map_name not in finished]
                )
        except DatabaseError as exc:
            LOGGER.exception("Store failure during unfinished map query: %s", exc)
            return Err(
                ErrorKind.STORE_UNAVAILABLE, "The database is unavailable right now."
            )

        common = set.intersection(
            *({entry.map_name for entry in maps} for maps in unfinished_sets)
        )
        result: Dict[str, MapEntry] = {}
        for maps in unfinished_sets:
            for entry in maps:
                if entry.map_name in common and entry.map_name not in result:
                    result[entry.map_name] = replace(entry, difficulty=difficulty_value)
        LOGGER.info(
            "Unfinished %s maps among %s players: %s",
            difficulty_value,
            len(names),
            len(result),
        )
        return Ok(list(result.values()))
