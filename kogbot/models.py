from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from peewee import (
    AutoField,
    CharField,
    DateTimeField,
    FloatField,
    ForeignKeyField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

DECISION_APPROVED = "approved"
DECISION_REJECTED = "rejected"


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo for SQLite storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class KogModels:
    db: SqliteDatabase
    Player: type
    FinishedMap: type
    KogMap: type
    Registration: type
    Audit: type


def _create_models(db: SqliteDatabase) -> KogModels:
    class BaseModel(Model):
        created_at = DateTimeField(default=utcnow_naive)
        updated_at = DateTimeField(default=utcnow_naive)

        def save(self, *args, **kwargs):  # type: ignore[override]
            self.updated_at = utcnow_naive()
            return super().save(*args, **kwargs)

        class Meta:
            database = db

    class Player(BaseModel):
        id = AutoField()
        discord_user_id = IntegerField(unique=True)
        # SQLite compares with BINARY collation, so names stay case sensitive.
        username = CharField(unique=True)
        rank = IntegerField(default=0)
        total_points = IntegerField(default=0)
        base_points = IntegerField(default=0)
        season_points = IntegerField(default=0)
        pvp_points = FloatField(default=0)
        refreshed_at = DateTimeField(null=True)

    class FinishedMap(BaseModel):
        id = AutoField()
        player = ForeignKeyField(
            Player, backref="finished_maps", on_delete="CASCADE", index=True
        )
        map_name = CharField()
        time = FloatField(default=0)
        timestamp = CharField(null=True)

    class KogMap(BaseModel):
        id = AutoField()
        map_name = CharField(unique=True)
        difficulty = CharField(index=True)
        star = IntegerField(default=0)
        points = IntegerField(default=0)
        author = CharField(default="")
        released_at = CharField(null=True)

    class Registration(BaseModel):
        id = CharField(primary_key=True)
        discord_user_id = IntegerField()
        claimed_username = CharField()
        decision = CharField(null=True)
        decided_by = IntegerField(null=True)
        decided_at = DateTimeField(null=True)

        @property
        def is_pending(self) -> bool:
            return self.decision is None

    # One undecided claim per Discord user; decided rows stay for audit.
    Registration.add_index(
        Registration.index(
            Registration.discord_user_id,
            unique=True,
            where=Registration.decision.is_null(),
            name="registration_one_pending_per_user",
        )
    )
    Registration.add_index(
        Registration.index(
            Registration.discord_user_id, name="registration_discord_user"
        )
    )

    class Audit(BaseModel):
        id = AutoField()
        actor_discord_id = IntegerField()
        action = CharField()
        payload = TextField(null=True)

    return KogModels(
        db=db,
        Player=Player,
        FinishedMap=FinishedMap,
        KogMap=KogMap,
        Registration=Registration,
        Audit=Audit,
    )


def init_kog_db(path: str) -> KogModels:
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = SqliteDatabase(path, pragmas={"foreign_keys": 1, "journal_mode": "wal"})
    models = _create_models(db)
    db.connect(reuse_if_open=True)
    db.create_tables(
        [
            models.Player,
            models.FinishedMap,
            models.KogMap,
            models.Registration,
            models.Audit,
        ]
    )
    return models


def record_audit(
    models: KogModels, actor_discord_id: int, action: str, payload: dict | None = None
):
    models.Audit.create(
        actor_discord_id=actor_discord_id,
        action=action,
        payload=json.dumps(payload) if payload else None,
    )
