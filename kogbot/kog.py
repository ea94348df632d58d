import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
from bs4 import BeautifulSoup

KOG_BASE = "https://kog.tw"
PLAYER_FETCH_ATTEMPTS = 2

LOGGER = logging.getLogger(__name__)


class KogError(Exception):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class KogPlayerNotFound(KogError):
    def __init__(self, username: str):
        super().__init__(f"No KoG player data for '{username}'", status=404)
        self.username = username


@dataclass(frozen=True)
class FinishedMapRecord:
    map_name: str
    time: float
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class PlayerSnapshot:
    username: str
    rank: int
    total_points: int
    base_points: int
    season_points: int
    pvp_points: float = 0.0
    finished_maps: tuple[FinishedMapRecord, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MapEntry:
    map_name: str
    difficulty: str
    star: int
    points: int
    author: str
    released_at: Optional[str] = None


def _as_int(value: Any) -> int:
    if value in (None, ""):
        return 0
    return int(float(value))


def parse_player_payload(username: str, payload: Any) -> PlayerSnapshot:
    """Turn the ``api.php`` answer into a snapshot.

    The endpoint wraps the real document in a JSON string under ``data``;
    anything without a success status or data means the player is unknown.
    """
    if not isinstance(payload, dict):
        raise KogError(f"Unexpected player payload for '{username}'")
    status = payload.get("status")
    data = payload.get("data")
    if status not in (None, 200, "200") or not data:
        raise KogPlayerNotFound(username)
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError as exc:
            raise KogError(f"Malformed player data for '{username}'") from exc
    if not isinstance(data, dict) or not isinstance(data.get("points"), dict):
        raise KogPlayerNotFound(username)

    points = data["points"]
    finished: list[FinishedMapRecord] = []
    try:
        for entry in data.get("finishedMaps") or []:
            finished.append(
                FinishedMapRecord(
                    map_name=str(entry["Map"]),
                    time=float(entry.get("Time") or 0),
                    timestamp=entry.get("Timestamp"),
                )
            )
        return PlayerSnapshot(
            username=str(points.get("Name") or username),
            rank=_as_int(points.get("Rank")),
            total_points=_as_int(points.get("TPoints")),
            base_points=_as_int(points.get("Points")),
            season_points=_as_int(points.get("Seasonpoints")),
            pvp_points=float(points.get("PvPpoints") or 0),
            finished_maps=tuple(finished),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise KogError(f"Malformed player data for '{username}': {exc}") from exc


def parse_map_page(html: str) -> List[MapEntry]:
    soup = BeautifulSoup(html, "html.parser")
    maps: List[MapEntry] = []
    for card in soup.select("div.card.mb-4.box-shadow"):
        header = card.select_one("div.card-header h4")
        body = card.select_one("ul.list-group-flush")
        if header is None or body is None:
            continue
        items = body.find_all("li")
        if len(items) < 4:
            LOGGER.warning("Skipping map card with %s list items", len(items))
            continue
        stars = body.select("i[class*=bi-star]")
        star = sum(1 for icon in stars if "bi-star-fill" in (icon.get("class") or []))
        difficulty_words = items[1].get_text(strip=True).split()
        points_text = items[2].get_text(strip=True).replace("points", "").split()
        footer = card.select_one("div.card-footer")
        released_at = None
        if footer is not None:
            released_at = footer.get_text(strip=True).replace("Released at ", "")
        try:
            points = int(points_text[0]) if points_text else 0
        except ValueError:
            points = 0
        maps.append(
            MapEntry(
                map_name=header.get_text(strip=True),
                difficulty=difficulty_words[0] if difficulty_words else "",
                star=star,
                points=points,
                author=items[3].get_text(strip=True),
                released_at=released_at or None,
            )
        )
    return maps


def player_page_url(username: str) -> str:
    return f"{KOG_BASE}/#p=players&player={quote(username)}"


class KogClient:
    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = 30.0,
    ):
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def close(self):
        if self._owns_session and self._session:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        payload: Dict[str, Any] | None = None,
        as_text: bool = False,
    ) -> Any:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        url = f"{KOG_BASE}{path}"
        backoff = 1.0
        last_status: int | None = None
        for attempt in range(5):
            try:
                async with self._session.request(method, url, json=payload) as resp:
                    if resp.status in (429, 500, 502, 503, 504):
                        raise KogError(f"Transient error {resp.status}", resp.status)
                    resp.raise_for_status()
                    if as_text:
                        return await resp.text()
                    # api.php answers JSON with a text/html content type
                    return await resp.json(content_type=None)
            except Exception as exc:
                status = getattr(exc, "status", None)
                last_status = status or last_status
                if attempt == 4:
                    raise KogError(
                        f"Failed request {url}: {exc}", status=last_status
                    ) from exc
                await asyncio.sleep(backoff + random.random())
                backoff *= 2

    async def _prime_player(self, username: str):
        name = quote(username)
        await self._request(
            "GET", f"/get.php?p=players&p=players&player={name}", as_text=True
        )

    async def fetch_player(self, username: str) -> PlayerSnapshot:
        # api.php only answers after the player page has been requested
        # in the same session.
        for attempt in range(PLAYER_FETCH_ATTEMPTS):
            await self._prime_player(username)
            payload = await self._request(
                "POST", "/api.php", payload={"type": "players", "player": username}
            )
            try:
                return parse_player_payload(username, payload)
            except KogPlayerNotFound:
                if attempt == PLAYER_FETCH_ATTEMPTS - 1:
                    raise
                LOGGER.debug("Empty player answer for %s; priming again", username)
        raise KogPlayerNotFound(username)

    async def fetch_all_maps(self) -> List[MapEntry]:
        html = await self._request("GET", "/get.php?p=maps", as_text=True)
        maps = parse_map_page(html)
        if not maps:
            raise KogError("Map page contained no maps")
        return maps
