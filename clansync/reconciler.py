# clansync/reconciler.py

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from clansync.database import PersistencePort
from clansync.errors import DuplicateKeyError, MalformedRecordError
from clansync.models import (
    TEAM_RESULTS,
    TRACKED_PLAYER_STATS,
    BattleRecord,
    ClanIdentity,
    PlayerBattleEntry,
    PlayerRecord,
    TeamEntry,
    utc_iso,
)

logger = logging.getLogger(__name__)

ACTION_INSERTED = "inserted"
ACTION_UPDATED = "updated"
ACTION_UNCHANGED = "unchanged"
ACTION_SKIPPED = "skipped"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PlayerUpsertOutcome:
    player_id: str
    action: str

    @property
    def is_new(self) -> bool:
        return self.action == ACTION_INSERTED


@dataclass(frozen=True)
class BattleInsertOutcome:
    battle_id: int
    action: str

    @property
    def is_new(self) -> bool:
        return self.action == ACTION_INSERTED


class Reconciler:
    """Decide insert/update/skip for fetched records against stored state."""

    def __init__(
        self,
        port: PersistencePort,
        staleness_threshold_seconds: float = 24 * 3600,
        clock: Callable[[], int] = _now_ms,
    ):
        self.port = port
        self.staleness_threshold_ms = int(staleness_threshold_seconds * 1000)
        self.clock = clock

    # --- Players ---

    @staticmethod
    def _stats_changed(old: Dict[str, Any], new: Dict[str, Any]) -> bool:
        return any(old.get(key) != new.get(key) for key in TRACKED_PLAYER_STATS)

    @staticmethod
    def _validate_player(raw: Dict[str, Any]) -> tuple[str, str, Dict[str, Any]]:
        if not isinstance(raw, dict):
            raise MalformedRecordError("Player record is not an object")
        player_id = raw.get("player_id")
        if player_id is None or str(player_id).strip() == "":
            raise MalformedRecordError("Player record has no account id")
        player_id = str(player_id).strip()
        username = raw.get("username")
        if not isinstance(username, str) or not username.strip():
            raise MalformedRecordError(f"Player {player_id} has no nickname", item_id=player_id)
        stats = raw.get("stats") or {}
        if not isinstance(stats, dict):
            raise MalformedRecordError(f"Player {player_id} has malformed stats", item_id=player_id)
        return player_id, username.strip(), stats

    def reconcile_player(
        self,
        raw: Dict[str, Any],
        clan: ClanIdentity,
        originating_user_id: str = "",
    ) -> PlayerUpsertOutcome:
        """Insert, update or leave a player. A non-empty originating_user_id is
        written when it differs from the stored one; an empty one never clears it.
        """
        player_id, username, stats = self._validate_player(raw)
        originating_user_id = str(originating_user_id or "").strip()
        now = self.clock()
        existing = self.port.get_player(player_id)

        if existing is None:
            self.port.upsert_player(PlayerRecord(
                player_id=player_id,
                clan_id=str(clan.clan_id),
                username=username,
                clan_tag=clan.tag,
                last_updated=now,
                stats=stats,
                originating_user_id=originating_user_id,
            ))
            return PlayerUpsertOutcome(player_id, ACTION_INSERTED)

        stale = now - existing.last_updated > self.staleness_threshold_ms
        changed = (
            self._stats_changed(existing.stats, stats)
            or existing.username != username
            or existing.clan_tag != clan.tag
            or (originating_user_id and existing.originating_user_id != originating_user_id)
        )
        if not changed and not stale:
            return PlayerUpsertOutcome(player_id, ACTION_UNCHANGED)

        self.port.upsert_player(PlayerRecord(
            player_id=player_id,
            clan_id=str(clan.clan_id),
            username=username,
            clan_tag=clan.tag,
            last_updated=max(now, existing.last_updated + 1),
            stats=stats,
            originating_user_id=originating_user_id or existing.originating_user_id,
        ))
        if existing.username != username:
            logger.info("Player %s renamed %s -> %s", player_id, existing.username, username)
        return PlayerUpsertOutcome(player_id, ACTION_UPDATED)

    # --- Battles ---

    @staticmethod
    def _require_int(value: Any, label: str, item_id: Optional[str]) -> int:
        if isinstance(value, bool):
            raise MalformedRecordError(f"{label} is not an integer", item_id=item_id)
        try:
            return int(value)
        except (TypeError, ValueError):
            raise MalformedRecordError(f"{label} is missing or not an integer", item_id=item_id)

    def build_battle(self, raw: Dict[str, Any]) -> BattleRecord:
        """Validate a parsed ladder battle and convert it to a BattleRecord."""
        if not isinstance(raw, dict):
            raise MalformedRecordError("Battle record is not an object")
        if raw.get("battle_id") is None:
            raise MalformedRecordError("Battle record has no battle id")
        battle_id = self._require_int(raw.get("battle_id"), "battle id", None)
        item_id = str(battle_id)

        finished_at = raw.get("finished_at")
        if not isinstance(finished_at, str) or not finished_at:
            raise MalformedRecordError(f"Battle {battle_id} has no finish time", item_id=item_id)
        try:
            finished_at = utc_iso(finished_at)
        except ValueError:
            raise MalformedRecordError(
                f"Battle {battle_id} has an unreadable finish time", item_id=item_id
            ) from None

        teams_raw = raw.get("teams")
        if not isinstance(teams_raw, list) or not teams_raw:
            raise MalformedRecordError(f"Battle {battle_id} has no teams", item_id=item_id)

        teams: List[TeamEntry] = []
        for index, team in enumerate(teams_raw):
            if not isinstance(team, dict) or not isinstance(team.get("players"), list):
                raise MalformedRecordError(
                    f"Battle {battle_id} team {index} has no player list", item_id=item_id
                )
            result = team.get("result") if team.get("result") in TEAM_RESULTS else "unknown"
            players: List[PlayerBattleEntry] = []
            for p in team["players"]:
                if not isinstance(p, dict):
                    raise MalformedRecordError(
                        f"Battle {battle_id} has a malformed player entry", item_id=item_id
                    )
                label = f"Battle {battle_id} player"
                players.append(PlayerBattleEntry(
                    survived=bool(p.get("survived")),
                    player_id=self._require_int(p.get("player_id"), f"{label} id", item_id),
                    name=str(p.get("name") or ""),
                    ship_id=self._require_int(p.get("ship_id"), f"{label} ship id", item_id),
                    ship_level=self._require_int(p.get("ship_level"), f"{label} ship level", item_id),
                    ship_name=str(p.get("ship_name") or ""),
                ))
            teams.append(TeamEntry(
                result=result,
                clan_id=team.get("clan_id"),
                team_number=team.get("team_number"),
                division_rating=team.get("division_rating"),
                league=team.get("league"),
                division=team.get("division"),
                rating_delta=team.get("rating_delta"),
                clan_tag=team.get("clan_tag"),
                clan_name=team.get("clan_name"),
                players=players,
            ))

        return BattleRecord(
            battle_id=battle_id,
            cluster_id=raw.get("cluster_id"),
            finished_at=finished_at,
            realm=raw.get("realm"),
            season_number=raw.get("season_number"),
            map_id=raw.get("map_id"),
            arena_id=raw.get("arena_id"),
            teams=teams,
            map_name=raw.get("map_name"),
        )

    def reconcile_battle(self, raw: Dict[str, Any]) -> BattleInsertOutcome:
        record = self.build_battle(raw)
        if self.port.get_battle(record.battle_id) is not None:
            return BattleInsertOutcome(record.battle_id, ACTION_SKIPPED)
        try:
            self.port.insert_battle(record)
        except DuplicateKeyError:
            # Stored by another worker between the read and the insert.
            return BattleInsertOutcome(record.battle_id, ACTION_SKIPPED)
        return BattleInsertOutcome(record.battle_id, ACTION_INSERTED)
