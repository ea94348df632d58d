from __future__ import annotations

import logging
from typing import List, Protocol

from peewee import DatabaseError, IntegrityError

from .kog import KogError, KogPlayerNotFound, MapEntry, PlayerSnapshot
from .models import DECISION_APPROVED, DECISION_REJECTED, KogModels, record_audit
from .results import Err, ErrorKind, Ok, Result
from .stores import PlayerStore, RegistrationStore

LOGGER = logging.getLogger(__name__)


class KogLike(Protocol):
    async def fetch_player(self, username: str) -> PlayerSnapshot: ...

    async def fetch_all_maps(self) -> List[MapEntry]: ...


def _store_failure(action: str, exc: Exception) -> Err:
    LOGGER.exception("Store failure during %s: %s", action, exc)
    return Err(ErrorKind.STORE_UNAVAILABLE, "The database is unavailable right now.")


class RegistrationWorkflow:
    """Registration lifecycle: Unregistered -> Pending -> Approved/Rejected/Deleted."""

    def __init__(
        self,
        models: KogModels,
        players: PlayerStore,
        registrations: RegistrationStore,
        provider: KogLike,
    ):
        self.models = models
        self.players = players
        self.registrations = registrations
        self.provider = provider

    async def register(self, discord_user_id: int, claimed_username: str) -> Result[str]:
        username = (claimed_username or "").strip()
        if not username:
            return Err(ErrorKind.INVALID_USERNAME, "A KoG username is required.")
        try:
            if self.players.get_by_discord_id(discord_user_id):
                return Err(
                    ErrorKind.ALREADY_REGISTERED,
                    "You are already registered. Ask a moderator to re-register.",
                )
            if self.registrations.pending_for(discord_user_id):
                return Err(
                    ErrorKind.PENDING_EXISTS,
                    "Your registration is still waiting for a moderator.",
                )
            if self.players.get_by_username(username):
                return Err(
                    ErrorKind.NAME_TAKEN, f"The name '{username}' is already in use."
                )
            try:
                registration = self.registrations.create(discord_user_id, username)
            except IntegrityError:
                return Err(
                    ErrorKind.PENDING_EXISTS,
                    "Your registration is still waiting for a moderator.",
                )
            record_audit(
                self.models,
                discord_user_id,
                "register",
                {"registration_id": registration.id, "username": username},
            )
        except DatabaseError as exc:
            return _store_failure("register", exc)
        LOGGER.info(
            "Registration %s created user=%s username=%s",
            registration.id,
            discord_user_id,
            username,
        )
        return Ok(registration.id)

    async def approve_registration(self, moderator_id: int, registration_id: str) -> Result:
        try:
            registration = self.registrations.get(registration_id)
            if registration is None:
                return Err(ErrorKind.NOT_FOUND, "Registration not found.")
            if not registration.is_pending:
                return Err(
                    ErrorKind.ALREADY_DECIDED, "This registration was already handled."
                )
            username = registration.claimed_username
            if self.players.get_by_username(username):
                return Err(
                    ErrorKind.NAME_TAKEN, f"The name '{username}' is already in use."
                )
        except DatabaseError as exc:
            return _store_failure("approve", exc)

        try:
            snapshot = await self.provider.fetch_player(username)
        except KogPlayerNotFound:
            LOGGER.warning(
                "Approval of %s failed: no KoG data for %s", registration_id, username
            )
            return Err(
                ErrorKind.EXTERNAL_DATA_UNAVAILABLE,
                f"No KoG data found for '{username}'; it cannot be registered.",
            )
        except KogError as exc:
            LOGGER.warning(
                "Approval of %s failed fetching %s: %s", registration_id, username, exc
            )
            return Err(
                ErrorKind.EXTERNAL_DATA_UNAVAILABLE,
                "KoG could not be reached to confirm this player.",
            )

        try:
            with self.models.db.atomic():
                if not self.registrations.mark_decided(
                    registration_id, DECISION_APPROVED, moderator_id
                ):
                    return Err(
                        ErrorKind.ALREADY_DECIDED,
                        "This registration was already handled.",
                    )
                player = self.players.create(
                    registration.discord_user_id, username, snapshot
                )
                record_audit(
                    self.models,
                    moderator_id,
                    "approve",
                    {"registration_id": registration_id, "username": username},
                )
        except IntegrityError:
            # The transaction rolled back: no decision and no player were written.
            if self.players.get_by_username(username):
                return Err(
                    ErrorKind.NAME_TAKEN, f"The name '{username}' is already in use."
                )
            return Err(
                ErrorKind.ALREADY_REGISTERED,
                "This Discord user is already registered.",
            )
        except DatabaseError as exc:
            return _store_failure("approve", exc)
        LOGGER.info(
            "Registration %s approved by %s: user %s is %s",
            registration_id,
            moderator_id,
            registration.discord_user_id,
            username,
        )
        return Ok(player)

    async def reject_registration(self, moderator_id: int, registration_id: str) -> Result:
        try:
            registration = self.registrations.get(registration_id)
            if registration is None:
                return Err(ErrorKind.NOT_FOUND, "Registration not found.")
            with self.models.db.atomic():
                if not self.registrations.mark_decided(
                    registration_id, DECISION_REJECTED, moderator_id
                ):
                    return Err(
                        ErrorKind.ALREADY_DECIDED,
                        "This registration was already handled.",
                    )
                record_audit(
                    self.models,
                    moderator_id,
                    "reject",
                    {"registration_id": registration_id},
                )
        except DatabaseError as exc:
            return _store_failure("reject", exc)
        LOGGER.info(
            "Registration %s of user %s rejected by %s",
            registration_id,
            registration.discord_user_id,
            moderator_id,
        )
        return Ok(registration)

    async def delete_registration(self, requester_id: int, registration_id: str) -> Result:
        try:
            registration = self.registrations.get_owned(registration_id, requester_id)
            if registration is None:
                return Err(ErrorKind.NOT_FOUND, "Registration not found.")
            if not registration.is_pending:
                return Err(
                    ErrorKind.ALREADY_DECIDED,
                    "This registration was already handled and cannot be deleted.",
                )
            with self.models.db.atomic():
                if not self.registrations.delete_owned(registration_id, requester_id):
                    return Err(
                        ErrorKind.ALREADY_DECIDED,
                        "This registration was already handled and cannot be deleted.",
                    )
                record_audit(
                    self.models,
                    requester_id,
                    "delete_registration",
                    {"registration_id": registration_id},
                )
        except DatabaseError as exc:
            return _store_failure("delete_registration", exc)
        LOGGER.info("User %s deleted registration %s", requester_id, registration_id)
        return Ok()

    async def unregister(self, discord_user_id: int) -> Result:
        try:
            with self.models.db.atomic():
                if not self.players.delete_by_discord_id(discord_user_id):
                    return Err(ErrorKind.NOT_REGISTERED, "You are not registered.")
                record_audit(self.models, discord_user_id, "unregister", {})
        except DatabaseError as exc:
            return _store_failure("unregister", exc)
        LOGGER.info("User %s unregistered", discord_user_id)
        return Ok()
