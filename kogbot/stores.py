from __future__ import annotations

import uuid
from typing import Iterable, List, Optional

from .kog import MapEntry, PlayerSnapshot
from .models import KogModels, utcnow_naive


class PlayerStore:
    def __init__(self, models: KogModels):
        self.models = models

    def get_by_discord_id(self, discord_user_id: int):
        Player = self.models.Player
        return Player.get_or_none(Player.discord_user_id == discord_user_id)

    def get_by_username(self, username: str):
        Player = self.models.Player
        return Player.get_or_none(Player.username == username)

    def usernames(self) -> List[str]:
        Player = self.models.Player
        return [row.username for row in Player.select().order_by(Player.username)]

    def finished_map_names(self, player) -> set[str]:
        FinishedMap = self.models.FinishedMap
        query = FinishedMap.select(FinishedMap.map_name).where(
            FinishedMap.player == player
        )
        return {row.map_name for row in query}

    def _write_finished_maps(self, player, snapshot: PlayerSnapshot):
        FinishedMap = self.models.FinishedMap
        FinishedMap.delete().where(FinishedMap.player == player).execute()
        rows = [
            {
                "player": player.id,
                "map_name": record.map_name,
                "time": record.time,
                "timestamp": record.timestamp,
            }
            for record in snapshot.finished_maps
        ]
        for start in range(0, len(rows), 100):
            FinishedMap.insert_many(rows[start : start + 100]).execute()

    def create(self, discord_user_id: int, username: str, snapshot: PlayerSnapshot):
        """Insert a player with its snapshot; raises IntegrityError on clashes."""
        with self.models.db.atomic():
            player = self.models.Player.create(
                discord_user_id=discord_user_id,
                username=username,
                rank=snapshot.rank,
                total_points=snapshot.total_points,
                base_points=snapshot.base_points,
                season_points=snapshot.season_points,
                pvp_points=snapshot.pvp_points,
                refreshed_at=utcnow_naive(),
            )
            self._write_finished_maps(player, snapshot)
        return player

    def replace_snapshot(self, username: str, snapshot: PlayerSnapshot) -> bool:
        with self.models.db.atomic():
            player = self.get_by_username(username)
            if player is None:
                return False
            player.rank = snapshot.rank
            player.total_points = snapshot.total_points
            player.base_points = snapshot.base_points
            player.season_points = snapshot.season_points
            player.pvp_points = snapshot.pvp_points
            player.refreshed_at = utcnow_naive()
            player.save()
            self._write_finished_maps(player, snapshot)
        return True

    def delete_by_discord_id(self, discord_user_id: int) -> bool:
        Player = self.models.Player
        deleted = (
            Player.delete().where(Player.discord_user_id == discord_user_id).execute()
        )
        return deleted > 0


class MapCatalog:
    def __init__(self, models: KogModels):
        self.models = models

    @staticmethod
    def _to_entry(row) -> MapEntry:
        return MapEntry(
            map_name=row.map_name,
            difficulty=row.difficulty,
            star=row.star,
            points=row.points,
            author=row.author,
            released_at=row.released_at,
        )

    def maps_by_difficulty(self, difficulty: str) -> List[MapEntry]:
        KogMap = self.models.KogMap
        query = (
            KogMap.select().where(KogMap.difficulty == difficulty).order_by(KogMap.id)
        )
        return [self._to_entry(row) for row in query]

    def count(self) -> int:
        return self.models.KogMap.select().count()

    def upsert(self, entries: Iterable[MapEntry]) -> int:
        KogMap = self.models.KogMap
        written = 0
        with self.models.db.atomic():
            for entry in entries:
                KogMap.insert(
                    map_name=entry.map_name,
                    difficulty=entry.difficulty,
                    star=entry.star,
                    points=entry.points,
                    author=entry.author,
                    released_at=entry.released_at,
                ).on_conflict(
                    conflict_target=[KogMap.map_name],
                    update={
                        KogMap.difficulty: entry.difficulty,
                        KogMap.star: entry.star,
                        KogMap.points: entry.points,
                        KogMap.author: entry.author,
                        KogMap.released_at: entry.released_at,
                        KogMap.updated_at: utcnow_naive(),
                    },
                ).execute()
                written += 1
        return written


class RegistrationStore:
    def __init__(self, models: KogModels):
        self.models = models

    def create(self, discord_user_id: int, claimed_username: str):
        """Insert a pending claim; raises IntegrityError if one is already pending."""
        return self.models.Registration.create(
            id=uuid.uuid4().hex,
            discord_user_id=discord_user_id,
            claimed_username=claimed_username,
        )

    def get(self, registration_id: str):
        Registration = self.models.Registration
        return Registration.get_or_none(Registration.id == registration_id)

    def pending_for(self, discord_user_id: int) -> Optional[object]:
        Registration = self.models.Registration
        return Registration.get_or_none(
            (Registration.discord_user_id == discord_user_id)
            & (Registration.decision.is_null())
        )

    def mark_decided(self, registration_id: str, decision: str, actor_id: int) -> bool:
        """Set the decision only if none exists yet; returns whether it was set."""
        Registration = self.models.Registration
        now = utcnow_naive()
        updated = (
            Registration.update(
                decision=decision,
                decided_by=actor_id,
                decided_at=now,
                updated_at=now,
            )
            .where(
                (Registration.id == registration_id)
                & (Registration.decision.is_null())
            )
            .execute()
        )
        return updated == 1

    def delete_owned(self, registration_id: str, discord_user_id: int) -> bool:
        Registration = self.models.Registration
        deleted = (
            Registration.delete()
            .where(
                (Registration.id == registration_id)
                & (Registration.discord_user_id == discord_user_id)
                & (Registration.decision.is_null())
            )
            .execute()
        )
        return deleted > 0

    def get_owned(self, registration_id: str, discord_user_id: int):
        Registration = self.models.Registration
        return Registration.get_or_none(
            (Registration.id == registration_id)
            & (Registration.discord_user_id == discord_user_id)
        )
