# clansync/database.py

import json
import logging
import os
import sqlite3
import threading
import time
from typing import Any, Dict, List, Optional

from clansync.config import resolve_db_path
from clansync.errors import DuplicateKeyError, PersistenceError
from clansync.models import (
    BattleRecord,
    PlayerBattleEntry,
    PlayerRecord,
    TeamEntry,
    utc_iso,
)

logger = logging.getLogger(__name__)


class PersistencePort:
    """Narrow read/write contract the reconciler depends on."""

    def get_player(self, player_id: str) -> Optional[PlayerRecord]:
        raise NotImplementedError

    def get_battle(self, battle_id: int) -> Optional[BattleRecord]:
        raise NotImplementedError

    def upsert_player(self, record: PlayerRecord) -> None:
        raise NotImplementedError

    def insert_battle(self, record: BattleRecord) -> None:
        """Store a battle with all teams and players, or nothing.

        Raises DuplicateKeyError when the battle id already exists.
        """
        raise NotImplementedError


class Database(PersistencePort):
    """SQLite persistence for players and clan battles.

    One connection is shared by all sync workers; every statement runs under
    ``self._lock`` so writes to the same id are serialized.
    """

    def __init__(self, db_path: str = 'data/clansync.db'):
        self.db_path = resolve_db_path(db_path)
        self.conn = None
        self._lock = threading.RLock()
        self.init_database()

    def init_database(self):
        """Create tables if they don't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                raise PersistenceError(f"Failed to create database directory '{db_dir}': {e}")

        try:
            self.conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA busy_timeout = 30000")
            self.conn.execute("PRAGMA foreign_keys = ON")
            # WAL improves concurrency, but enabling it requires a write lock.
            self._set_wal_mode_best_effort()

            cursor = self.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS players (
                    player_id           TEXT PRIMARY KEY,
                    clan_id             TEXT,
                    username            TEXT NOT NULL,
                    originating_user_id TEXT NOT NULL DEFAULT '',
                    clan_tag            TEXT,
                    stats_json          TEXT,
                    last_updated        INTEGER NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS clan_battles (
                    battle_id       INTEGER PRIMARY KEY,
                    cluster_id      INTEGER,
                    finished_at     TEXT,
                    realm           TEXT,
                    season_number   INTEGER,
                    map_id          INTEGER,
                    map_name        TEXT,
                    arena_id        INTEGER,
                    created_at      INTEGER
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS clan_battle_teams (
                    team_row_id     INTEGER PRIMARY KEY AUTOINCREMENT,
                    battle_id       INTEGER NOT NULL,
                    position        INTEGER NOT NULL,
                    team_number     INTEGER,
                    result          TEXT NOT NULL,
                    league          INTEGER,
                    division        INTEGER,
                    division_rating INTEGER,
                    rating_delta    INTEGER,
                    clan_id         INTEGER,
                    clan_tag        TEXT,
                    clan_name       TEXT,
                    FOREIGN KEY (battle_id) REFERENCES clan_battles(battle_id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS clan_battle_players (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    battle_id       INTEGER NOT NULL,
                    team_row_id     INTEGER NOT NULL,
                    position        INTEGER NOT NULL,
                    player_id       INTEGER NOT NULL,
                    player_name     TEXT NOT NULL,
                    survived        INTEGER NOT NULL,
                    ship_id         INTEGER NOT NULL,
                    ship_level      INTEGER NOT NULL,
                    ship_name       TEXT NOT NULL,
                    FOREIGN KEY (battle_id) REFERENCES clan_battles(battle_id) ON DELETE CASCADE,
                    FOREIGN KEY (team_row_id) REFERENCES clan_battle_teams(team_row_id) ON DELETE CASCADE
                )
            """)

            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_clan_battles_finished_at ON clan_battles(finished_at)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_cb_teams_battle ON clan_battle_teams(battle_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_cb_teams_clan ON clan_battle_teams(clan_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_cb_players_team ON clan_battle_players(team_row_id)"
            )

            self._commit_with_retry(context="init schema commit")
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to initialize database at '{self.db_path}': {e}")

    def _commit_with_retry(self, retries: int = 8, delay_seconds: float = 0.25, context: str = "commit") -> None:
        """
        Retry commit on transient SQLITE_BUSY/locked errors.
        """
        last_error = None
        for attempt in range(retries):
            try:
                self.conn.commit()
                return
            except sqlite3.OperationalError as e:
                last_error = e
                if "locked" not in str(e).lower() and "busy" not in str(e).lower():
                    raise
                if attempt == retries - 1:
                    break
                time.sleep(delay_seconds)
        raise PersistenceError(
            f"Failed to {context}: database remained locked after {retries} attempts ({last_error})"
        )

    def _set_wal_mode_best_effort(self, retries: int = 5, delay_seconds: float = 0.2) -> None:
        """Try to enable WAL without failing startup if the DB is temporarily locked."""
        for attempt in range(retries):
            try:
                self.conn.execute("PRAGMA journal_mode = WAL")
                return
            except sqlite3.OperationalError as e:
                msg = str(e).lower()
                if "locked" not in msg and "busy" not in msg:
                    raise
                if attempt == retries - 1:
                    logger.warning("Could not enable WAL mode (database locked); continuing. (%s)", e)
                    return
                time.sleep(delay_seconds)

    # --- Players ---

    @staticmethod
    def _row_to_player(row: sqlite3.Row) -> PlayerRecord:
        try:
            stats = json.loads(row["stats_json"]) if row["stats_json"] else {}
        except (TypeError, json.JSONDecodeError):
            logger.warning("Invalid stats_json for player %s; treating as empty.", row["player_id"])
            stats = {}
        return PlayerRecord(
            player_id=row["player_id"],
            clan_id=row["clan_id"] or "",
            username=row["username"],
            clan_tag=row["clan_tag"] or "",
            last_updated=int(row["last_updated"]),
            stats=stats if isinstance(stats, dict) else {},
            originating_user_id=row["originating_user_id"] or "",
        )

    def get_player(self, player_id: str) -> Optional[PlayerRecord]:
        """Get a player by Wargaming account id."""
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.execute("SELECT * FROM players WHERE player_id = ?", (str(player_id),))
                row = cursor.fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to read player {player_id}: {e}")
        return self._row_to_player(row) if row else None

    def upsert_player(self, record: PlayerRecord) -> None:
        """Insert or update a player in one statement.

        last_updated never moves backwards; an originating user id is kept
        when the incoming record carries none.
        """
        with self._lock:
            try:
                self.conn.execute("""
                    INSERT INTO players (
                        player_id, clan_id, username, originating_user_id,
                        clan_tag, stats_json, last_updated
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(player_id) DO UPDATE SET
                        clan_id = excluded.clan_id,
                        username = excluded.username,
                        originating_user_id = CASE
                            WHEN excluded.originating_user_id != '' THEN excluded.originating_user_id
                            ELSE players.originating_user_id
                        END,
                        clan_tag = excluded.clan_tag,
                        stats_json = excluded.stats_json,
                        last_updated = CASE
                            WHEN excluded.last_updated > players.last_updated THEN excluded.last_updated
                            ELSE players.last_updated + 1
                        END
                """, (
                    str(record.player_id),
                    record.clan_id,
                    record.username,
                    record.originating_user_id or "",
                    record.clan_tag,
                    json.dumps(record.stats or {}, sort_keys=True),
                    int(record.last_updated),
                ))
                self._commit_with_retry(context="upsert player commit")
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(f"Failed to upsert player {record.player_id}: {e}")

    def get_all_players(self, clan_tag: Optional[str] = None) -> List[PlayerRecord]:
        """Get all players, optionally for one clan tag."""
        with self._lock:
            cursor = self.conn.cursor()
            if clan_tag:
                cursor.execute(
                    "SELECT * FROM players WHERE UPPER(clan_tag) = UPPER(?) ORDER BY username",
                    (clan_tag,),
                )
            else:
                cursor.execute("SELECT * FROM players ORDER BY username")
            rows = cursor.fetchall()
        return [self._row_to_player(row) for row in rows]

    def count_players(self) -> int:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM players")
            return int(cursor.fetchone()[0])

    # --- Clan battles ---

    def get_battle(self, battle_id: int) -> Optional[BattleRecord]:
        """Load a stored battle with its teams and players in stored order."""
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.execute("SELECT * FROM clan_battles WHERE battle_id = ?", (int(battle_id),))
                battle = cursor.fetchone()
                if not battle:
                    return None
                cursor.execute(
                    "SELECT * FROM clan_battle_teams WHERE battle_id = ? ORDER BY position",
                    (int(battle_id),),
                )
                team_rows = cursor.fetchall()
                cursor.execute(
                    "SELECT * FROM clan_battle_players WHERE battle_id = ? ORDER BY team_row_id, position",
                    (int(battle_id),),
                )
                player_rows = cursor.fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to read battle {battle_id}: {e}")

        players_by_team: Dict[int, List[PlayerBattleEntry]] = {}
        for p in player_rows:
            players_by_team.setdefault(p["team_row_id"], []).append(
                PlayerBattleEntry(
                    survived=bool(p["survived"]),
                    player_id=p["player_id"],
                    name=p["player_name"],
                    ship_id=p["ship_id"],
                    ship_level=p["ship_level"],
                    ship_name=p["ship_name"],
                )
            )

        teams = [
            TeamEntry(
                result=t["result"],
                clan_id=t["clan_id"],
                team_number=t["team_number"],
                division_rating=t["division_rating"],
                league=t["league"],
                division=t["division"],
                rating_delta=t["rating_delta"],
                clan_tag=t["clan_tag"],
                clan_name=t["clan_name"],
                players=players_by_team.get(t["team_row_id"], []),
            )
            for t in team_rows
        ]

        return BattleRecord(
            battle_id=battle["battle_id"],
            cluster_id=battle["cluster_id"],
            finished_at=battle["finished_at"],
            realm=battle["realm"],
            season_number=battle["season_number"],
            map_id=battle["map_id"],
            arena_id=battle["arena_id"],
            teams=teams,
            map_name=battle["map_name"],
        )

    def insert_battle(self, record: BattleRecord) -> None:
        """Insert a battle, its teams and players as one transaction.

        finished_at is stored in UTC so window queries can compare it as text.
        """
        try:
            finished_at = utc_iso(record.finished_at)
        except ValueError:
            raise PersistenceError(
                f"Battle {record.battle_id} has an unreadable finish time {record.finished_at!r}"
            ) from None
        with self._lock:
            cursor = self.conn.cursor()
            try:
                cursor.execute("""
                    INSERT INTO clan_battles (
                        battle_id, cluster_id, finished_at, realm, season_number,
                        map_id, map_name, arena_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    int(record.battle_id),
                    record.cluster_id,
                    finished_at,
                    record.realm,
                    record.season_number,
                    record.map_id,
                    record.map_name,
                    record.arena_id,
                    int(time.time() * 1000),
                ))

                for team_pos, team in enumerate(record.teams):
                    cursor.execute("""
                        INSERT INTO clan_battle_teams (
                            battle_id, position, team_number, result, league, division,
                            division_rating, rating_delta, clan_id, clan_tag, clan_name
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        int(record.battle_id),
                        team_pos,
                        team.team_number,
                        team.result,
                        team.league,
                        team.division,
                        team.division_rating,
                        team.rating_delta,
                        team.clan_id,
                        team.clan_tag,
                        team.clan_name,
                    ))
                    team_row_id = cursor.lastrowid

                    for player_pos, p in enumerate(team.players):
                        cursor.execute("""
                            INSERT INTO clan_battle_players (
                                battle_id, team_row_id, position, player_id, player_name,
                                survived, ship_id, ship_level, ship_name
                            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """, (
                            int(record.battle_id),
                            team_row_id,
                            player_pos,
                            p.player_id,
                            p.name,
                            1 if p.survived else 0,
                            p.ship_id,
                            p.ship_level,
                            p.ship_name,
                        ))

                self._commit_with_retry(context="insert battle commit")
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                if "clan_battles.battle_id" in str(e):
                    raise DuplicateKeyError(f"Battle {record.battle_id} already stored")
                raise PersistenceError(f"Failed to insert battle {record.battle_id}: {e}")
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(f"Failed to insert battle {record.battle_id}: {e}")
            except PersistenceError:
                self.conn.rollback()
                raise

    def battle_exists(self, battle_id: int) -> bool:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT 1 FROM clan_battles WHERE battle_id = ? LIMIT 1", (int(battle_id),))
            return cursor.fetchone() is not None

    def count_battles(self) -> int:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM clan_battles")
            return int(cursor.fetchone()[0])

    def get_battle_players(self, battle_id: int) -> List[Dict[str, Any]]:
        """Flat player rows for one battle, joined with their team result."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT p.*, t.result, t.clan_id, t.clan_tag
                FROM clan_battle_players p
                JOIN clan_battle_teams t ON t.team_row_id = p.team_row_id
                WHERE p.battle_id = ?
                ORDER BY t.position, p.position
            """, (int(battle_id),))
            return [dict(row) for row in cursor.fetchall()]

    def get_clan_battle_player_stats(
        self,
        clan_id: int,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Per-player clan battle stats for one clan between two ISO timestamps.

        Bounds may carry any UTC offset; both are normalized before comparing.
        """
        query = """
            SELECT p.player_id, p.player_name, p.survived, p.ship_name, t.result
            FROM clan_battle_players p
            JOIN clan_battle_teams t ON t.team_row_id = p.team_row_id
            JOIN clan_battles b ON b.battle_id = p.battle_id
            WHERE t.clan_id = ?
        """
        params: List[Any] = [int(clan_id)]
        if start:
            query += " AND b.finished_at >= ?"
            params.append(utc_iso(start))
        if end:
            query += " AND b.finished_at <= ?"
            params.append(utc_iso(end))
        query += " ORDER BY b.finished_at, p.position"

        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(query, tuple(params))
            rows = cursor.fetchall()

        stats: Dict[int, Dict[str, Any]] = {}
        for row in rows:
            entry = stats.setdefault(row["player_id"], {
                "player_id": row["player_id"],
                "player_name": row["player_name"] or "Unknown",
                "battles": 0,
                "wins": 0,
                "survived": 0,
                "ship_usage": {},
            })
            entry["battles"] += 1
            if row["result"] == "win":
                entry["wins"] += 1
            if row["survived"]:
                entry["survived"] += 1
            ship = row["ship_name"] or "Unknown Ship"
            entry["ship_usage"][ship] = entry["ship_usage"].get(ship, 0) + 1

        out = list(stats.values())
        for entry in out:
            entry["win_rate"] = entry["wins"] / entry["battles"] * 100
            entry["survival_rate"] = entry["survived"] / entry["battles"] * 100
        out.sort(key=lambda e: (-e["battles"], e["player_name"].lower()))
        return out

    def close(self):
        """Close database connection."""
        if self.conn:
            with self._lock:
                self.conn.close()
                self.conn = None
