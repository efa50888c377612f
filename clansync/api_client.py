from __future__ import annotations

import http.client
import json
import logging
import socket
import threading
import time
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from clansync.errors import RemoteApiError
from clansync.models import TRACKED_PLAYER_STATS, ClanIdentity

logger = logging.getLogger(__name__)


class WargamingAPIClient:
    API_BASES = {
        "na": "https://api.worldofwarships.com/wows",
        "eu": "https://api.worldofwarships.eu/wows",
        "asia": "https://api.worldofwarships.asia/wows",
        "ru": "https://api.worldofwarships.ru/wows",
    }
    # The ladder lives on the clans portal of each realm, not on the public API host.
    LADDER_BASES = {
        "na": "https://clans.worldofwarships.com",
        "eu": "https://clans.worldofwarships.eu",
        "asia": "https://clans.worldofwarships.asia",
        "ru": "https://clans.worldofwarships.ru",
    }
    LADDER_PATH = "/api/ladder/battles/"
    HEADERS = {
        "User-Agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/126.0.0.0 Safari/537.36"
        ),
        "Accept": "application/json, text/plain, */*",
    }
    TEAM_SIDES = (1, 2)

    RESULT_MAP = {
        "victory": "win",
        "win": "win",
        "defeat": "loss",
        "lose": "loss",
        "loss": "loss",
        "draw": "draw",
    }

    # Wargaming reports some failures inside a 200 envelope.
    ENVELOPE_ERROR_STATUS = {
        "REQUEST_LIMIT_EXCEEDED": 429,
        "SOURCE_NOT_AVAILABLE": 503,
        "INVALID_APPLICATION_ID": 401,
        "APPLICATION_IS_BLOCKED": 403,
        "INVALID_IP_ADDRESS": 403,
    }

    PUBLIC_KEY = "__public__"

    def __init__(
        self,
        application_id: str = "",
        timeout_seconds: float = 20,
        min_interval_seconds: float = 1.0,
    ):
        self._application_id = application_id or ""
        self.timeout_seconds = timeout_seconds
        self.min_interval_seconds = min_interval_seconds
        self._last_request_at: Dict[str, float] = {}
        self._rate_lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        if not self._application_id:
            logger.warning("No WG_API_KEY configured; public API calls will be rejected")

    @classmethod
    def from_settings(cls, settings) -> "WargamingAPIClient":
        return cls(
            application_id=settings.api_key,
            timeout_seconds=settings.timeout_seconds,
            min_interval_seconds=settings.request_interval_seconds,
        )

    # --- Transport ---

    def _key_lock(self, key: str) -> threading.Lock:
        with self._rate_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _throttle(self, key: str) -> None:
        """Block until min_interval_seconds has passed since the last call for key."""
        if self.min_interval_seconds <= 0:
            return
        with self._key_lock(key):
            last = self._last_request_at.get(key)
            if last is not None:
                wait = self.min_interval_seconds - (time.monotonic() - last)
                if wait > 0:
                    time.sleep(wait)
            self._last_request_at[key] = time.monotonic()

    def _get_json(
        self,
        url: str,
        endpoint: str,
        clan_tag: Optional[str] = None,
        cookies: str = "",
    ) -> Any:
        headers = dict(self.HEADERS)
        if cookies:
            headers["Cookie"] = cookies
        self._throttle(clan_tag or self.PUBLIC_KEY)
        logger.debug("GET %s clan=%s", endpoint, clan_tag or "-")

        req = Request(url, headers=headers, method="GET")
        try:
            with urlopen(req, timeout=self.timeout_seconds) as resp:
                body = resp.read().decode("utf-8")
        except HTTPError as exc:
            raise RemoteApiError(exc.code, clan_tag, message=endpoint) from None
        except (socket.timeout, TimeoutError):
            raise RemoteApiError(None, clan_tag, message=endpoint, timed_out=True) from None
        except URLError as exc:
            # Connection-level failures are transient from the caller's view.
            reason = getattr(exc, "reason", None)
            detail = type(reason).__name__ if reason is not None else "URLError"
            raise RemoteApiError(
                None, clan_tag, message=f"{endpoint} ({detail})", timed_out=True
            ) from None
        except (http.client.HTTPException, OSError) as exc:
            # Dropped connections and truncated bodies surface unwrapped from urllib.
            raise RemoteApiError(
                None, clan_tag, message=f"{endpoint} ({type(exc).__name__})", timed_out=True
            ) from None

        try:
            return json.loads(body)
        except json.JSONDecodeError:
            raise RemoteApiError(502, clan_tag, message=f"{endpoint} returned invalid JSON") from None

    def _request(
        self,
        clan: Optional[ClanIdentity],
        endpoint: str,
        params: Dict[str, Any],
    ) -> Any:
        """Call the public Wargaming API and unwrap its {status, data} envelope."""
        region = clan.region if clan else "na"
        base = self.API_BASES.get(region, self.API_BASES["na"])
        query = urlencode({"application_id": self._application_id, **params})
        url = f"{base}/{endpoint}/?{query}"
        tag = clan.tag if clan else None

        payload = self._get_json(url, endpoint, clan_tag=tag)
        if not isinstance(payload, dict):
            raise RemoteApiError(502, tag, message=f"{endpoint} returned unexpected payload")
        if payload.get("status") != "ok":
            error = payload.get("error") or {}
            name = str(error.get("message") or "UNKNOWN_ERROR")
            status = self.ENVELOPE_ERROR_STATUS.get(name)
            if status is None:
                status = self._safe_int(error.get("code"), 400)
            raise RemoteApiError(status, tag, message=f"{endpoint}: {name}")
        return payload.get("data")

    # --- Helpers ---

    @staticmethod
    def _safe_int(value: Any, default: Optional[int] = 0) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def _map_result(self, value: Any) -> str:
        return self.RESULT_MAP.get(str(value or "").strip().lower(), "unknown")

    # --- Parsing ---

    def parse_player(self, node: Optional[Dict[str, Any]], account_id: Any) -> Dict[str, Any]:
        """Normalize an account/info node. Missing nodes yield a record without a username."""
        node = node if isinstance(node, dict) else {}
        statistics = node.get("statistics") or {}
        pvp = statistics.get("pvp") if isinstance(statistics, dict) else None
        pvp = pvp if isinstance(pvp, dict) else {}

        stats: Dict[str, Any] = {}
        for key in TRACKED_PLAYER_STATS:
            if key in pvp:
                stats[key] = self._safe_int(pvp.get(key))
        if "max_damage_dealt" in pvp:
            stats["max_damage_dealt"] = self._safe_int(pvp.get("max_damage_dealt"))

        return {
            "player_id": node.get("account_id", account_id),
            "username": node.get("nickname"),
            "hidden_profile": bool(node.get("hidden_profile")),
            "last_battle_time": node.get("last_battle_time"),
            "stats": stats,
        }

    def parse_battle(self, battle: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize one ladder battle. Validation is left to the reconciler."""
        battle = battle if isinstance(battle, dict) else {}
        map_info = battle.get("map") if isinstance(battle.get("map"), dict) else {}
        teams_raw = battle.get("teams")

        teams: Optional[List[Dict[str, Any]]] = None
        if isinstance(teams_raw, list):
            teams = [self.parse_team(team) for team in teams_raw]

        return {
            "battle_id": battle.get("id"),
            "cluster_id": self._safe_int(battle.get("cluster_id"), None),
            "finished_at": battle.get("finished_at"),
            "realm": battle.get("realm"),
            "season_number": self._safe_int(battle.get("season_number"), None),
            "map_id": self._safe_int(battle.get("map_id"), None),
            "map_name": map_info.get("name"),
            "arena_id": self._safe_int(battle.get("arena_id"), None),
            "teams": teams,
        }

    def parse_team(self, team: Dict[str, Any]) -> Dict[str, Any]:
        team = team if isinstance(team, dict) else {}
        claninfo = team.get("claninfo") if isinstance(team.get("claninfo"), dict) else {}
        players_raw = team.get("players")
        players: Optional[List[Dict[str, Any]]] = None
        if isinstance(players_raw, list):
            players = [self.parse_battle_player(p) for p in players_raw]

        return {
            "result": self._map_result(team.get("result")),
            "clan_id": self._safe_int(team.get("clan_id") or claninfo.get("id"), None),
            "team_number": self._safe_int(team.get("team_number"), None),
            "division_rating": self._safe_int(team.get("division_rating"), None),
            "league": self._safe_int(team.get("league"), None),
            "division": self._safe_int(team.get("division"), None),
            "rating_delta": self._safe_int(team.get("rating_delta"), None),
            "clan_tag": claninfo.get("tag"),
            "clan_name": claninfo.get("name"),
            "players": players,
        }

    def parse_battle_player(self, player: Dict[str, Any]) -> Dict[str, Any]:
        player = player if isinstance(player, dict) else {}
        ship = player.get("ship") if isinstance(player.get("ship"), dict) else {}
        return {
            "survived": bool(player.get("survived")),
            "player_id": self._safe_int(player.get("spa_id"), None),
            "name": player.get("nickname") or player.get("name"),
            "ship_id": self._safe_int(player.get("vehicle_id"), None),
            "ship_level": self._safe_int(ship.get("level"), None),
            "ship_name": ship.get("name"),
        }

    # --- Public API ---

    def find_player_by_name(self, clan: ClanIdentity, username: str) -> Optional[str]:
        """Exact-name account lookup in the clan's realm. Returns the account id or None."""
        data = self._request(clan, "account/list", {"search": username, "type": "exact"})
        if not isinstance(data, list) or not data:
            return None
        first = data[0] if isinstance(data[0], dict) else {}
        account_id = first.get("account_id")
        return str(account_id) if account_id is not None else None

    def get_clan_info(self, clan: ClanIdentity) -> Optional[Dict[str, Any]]:
        data = self._request(clan, "clans/info", {"clan_id": clan.clan_id})
        if not isinstance(data, dict):
            return None
        return data.get(str(clan.clan_id))

    def fetch_player_ids(self, clan: ClanIdentity) -> List[str]:
        """Return the clan roster as account ids, in API order."""
        info = self.get_clan_info(clan)
        if not info:
            raise RemoteApiError(404, clan.tag, message="clans/info: clan not found")
        members = info.get("members_ids") or []
        return [str(member_id) for member_id in members]

    def fetch_player(self, clan: ClanIdentity, account_id: str) -> Dict[str, Any]:
        data = self._request(clan, "account/info", {"account_id": account_id})
        node = data.get(str(account_id)) if isinstance(data, dict) else None
        return self.parse_player(node, account_id)

    def fetch_players(
        self, clan: ClanIdentity
    ) -> Iterator[Tuple[str, Callable[[], Dict[str, Any]]]]:
        """Fetch the roster now and return lazy (account_id, fetch) pairs.

        Each fetch issues one account/info request when called, so callers can
        retry a single player without refetching the roster.
        """
        player_ids = self.fetch_player_ids(clan)
        return ((account_id, partial(self.fetch_player, clan, account_id)) for account_id in player_ids)

    def fetch_ladder_battles(self, clan: ClanIdentity, team: int) -> List[Dict[str, Any]]:
        """Raw ladder battles for one team side. Requires the clan's cookie credential."""
        if team not in self.TEAM_SIDES:
            raise ValueError(f"team must be one of {self.TEAM_SIDES}, got {team!r}")
        cookies = clan.credential.reveal()
        if not cookies:
            raise RemoteApiError(401, clan.tag, message="ladder/battles: no credential configured")

        base = self.LADDER_BASES.get(clan.region, self.LADDER_BASES["na"])
        url = f"{base}{self.LADDER_PATH}?{urlencode({'team': team})}"
        payload = self._get_json(url, "ladder/battles", clan_tag=clan.tag, cookies=cookies)
        if isinstance(payload, dict):
            payload = list(payload.values())
        if not isinstance(payload, list):
            raise RemoteApiError(502, clan.tag, message="ladder/battles returned unexpected payload")
        return payload

    def fetch_battles(
        self,
        clan: ClanIdentity,
        team: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Lazily yield parsed battles for one team side, or both sides deduplicated by id."""
        sides = self.TEAM_SIDES if team is None else (team,)
        seen = set()
        for side in sides:
            for raw in self.fetch_ladder_battles(clan, side):
                parsed = self.parse_battle(raw)
                battle_id = parsed.get("battle_id")
                if battle_id is not None:
                    if battle_id in seen:
                        continue
                    seen.add(battle_id)
                yield parsed
