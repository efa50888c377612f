# tests/helpers.py

import os
import tempfile
from functools import partial
from typing import Any, Dict, List, Optional

from clansync.clans import ClanRegistry
from clansync.database import Database
from clansync.models import ClanIdentity, Secret
from clansync.orchestrator import SyncOrchestrator
from clansync.reconciler import Reconciler

FIXED_NOW_MS = 1_760_000_000_000


def create_test_db() -> Database:
    """Create a fresh database in a temp file. Caller removes db.db_path."""
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    return Database(db_path)


def remove_test_db(db: Database) -> None:
    db.close()
    for suffix in ("", "-wal", "-shm"):
        path = db.db_path + suffix
        if os.path.exists(path):
            os.remove(path)


def make_clan(tag: str, clan_id: int, credential: str = "wsauth_token=test", region: str = "na") -> ClanIdentity:
    return ClanIdentity(
        clan_id=clan_id,
        tag=tag,
        name=f"{tag} clan",
        region=region,
        credential=Secret(credential),
    )


def make_registry(*clans: ClanIdentity, default_tag: Optional[str] = None) -> ClanRegistry:
    return ClanRegistry(list(clans), default_tag=default_tag)


def raw_player(player_id: str, username: str, battles: int = 100, wins: int = 55) -> Dict[str, Any]:
    """Parsed account/info record as the API client returns it."""
    return {
        "player_id": player_id,
        "username": username,
        "hidden_profile": False,
        "last_battle_time": 1759990000,
        "stats": {
            "battles": battles,
            "wins": wins,
            "losses": battles - wins,
            "draws": 0,
            "survived_battles": battles // 2,
            "damage_dealt": battles * 50000,
            "frags": battles,
            "xp": battles * 1000,
        },
    }


def raw_battle(
    battle_id: int,
    clan_id: int = 1000072593,
    result: str = "win",
    finished_at: str = "2026-10-10T20:15:00+00:00",
    players: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Parsed ladder battle with our team first and an opponent second."""
    if players is None:
        players = [
            {"survived": True, "player_id": 501, "name": "Alpha", "ship_id": 3001,
             "ship_level": 10, "ship_name": "Yamato"},
            {"survived": False, "player_id": 502, "name": "Bravo", "ship_id": 3002,
             "ship_level": 10, "ship_name": "Des Moines"},
        ]
    opponent_result = {"win": "loss", "loss": "win"}.get(result, result)
    return {
        "battle_id": battle_id,
        "cluster_id": 1,
        "finished_at": finished_at,
        "realm": "us",
        "season_number": 27,
        "map_id": 17,
        "map_name": "Trap",
        "arena_id": battle_id * 10,
        "teams": [
            {"result": result, "clan_id": clan_id, "team_number": 1, "division_rating": 50,
             "league": 1, "division": 2, "rating_delta": 25, "clan_tag": "PN31",
             "clan_name": "Penetration Nation", "players": players},
            {"result": opponent_result, "clan_id": 999, "team_number": 2, "division_rating": 40,
             "league": 1, "division": 2, "rating_delta": -25, "clan_tag": "ENEMY",
             "clan_name": "Enemy", "players": [
                 {"survived": False, "player_id": 901, "name": "Foe", "ship_id": 4001,
                  "ship_level": 10, "ship_name": "Montana"},
             ]},
        ],
    }


class FakeClient:
    """In-memory stand-in for WargamingAPIClient.

    ``failures`` maps a call key to a list of exceptions raised on successive
    calls before the call succeeds. A player value that is an exception is
    raised on every call.
    """

    TEAM_SIDES = (1, 2)

    def __init__(self, rosters=None, players=None, battles=None, failures=None):
        self.rosters = rosters or {}
        self.players = players or {}
        self.battles = battles or {}
        self.failures = failures or {}
        self.calls: List[tuple] = []
        self.hooks: Dict[tuple, Any] = {}

    def _before(self, key: tuple) -> None:
        self.calls.append(key)
        hook = self.hooks.get(key)
        if hook is not None:
            hook()
        queue = self.failures.get(key)
        if queue:
            raise queue.pop(0)

    def fetch_player_ids(self, clan: ClanIdentity) -> List[str]:
        self._before(("roster", clan.tag))
        return list(self.rosters.get(clan.tag, []))

    def fetch_player(self, clan: ClanIdentity, account_id: str) -> Dict[str, Any]:
        self._before(("player", clan.tag, account_id))
        value = self.players[clan.tag][account_id]
        if isinstance(value, Exception):
            raise value
        return dict(value)

    def fetch_players(self, clan: ClanIdentity):
        player_ids = self.fetch_player_ids(clan)
        return ((account_id, partial(self.fetch_player, clan, account_id)) for account_id in player_ids)

    def find_player_by_name(self, clan: ClanIdentity, username: str) -> Optional[str]:
        self._before(("lookup", clan.tag, username))
        for account_id, value in self.players.get(clan.tag, {}).items():
            if isinstance(value, dict) and value.get("username") == username:
                return account_id
        return None

    def fetch_battles(self, clan: ClanIdentity, team: Optional[int] = None):
        sides = self.TEAM_SIDES if team is None else (team,)
        for side in sides:
            self._before(("battles", clan.tag, side))
            for battle in self.battles.get(clan.tag, {}).get(side, []):
                yield battle


def make_orchestrator(
    registry: ClanRegistry,
    client: FakeClient,
    db: Database,
    max_retries: int = 3,
    max_workers: int = 1,
    sleeps: Optional[List[float]] = None,
    clock=None,
) -> SyncOrchestrator:
    """Orchestrator with a recording sleep so tests never wait on backoff."""
    sleeps = sleeps if sleeps is not None else []
    reconciler = Reconciler(db, staleness_threshold_seconds=24 * 3600, clock=clock or (lambda: FIXED_NOW_MS))
    return SyncOrchestrator(
        registry,
        client,
        reconciler,
        max_retries=max_retries,
        backoff_base_seconds=1.0,
        backoff_max_seconds=30.0,
        max_workers=max_workers,
        sleep=sleeps.append,
    )
