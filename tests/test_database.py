# tests/test_database.py

import os
import tempfile

import pytest

from clansync.database import Database
from clansync.errors import DuplicateKeyError, PersistenceError
from clansync.models import BattleRecord, PlayerBattleEntry, PlayerRecord, TeamEntry


class TestDatabase:
    """Test suite for database operations."""

    @pytest.fixture
    def db(self):
        """Create a temporary database for testing."""
        fd, db_path = tempfile.mkstemp(suffix='.db')
        os.close(fd)

        database = Database(db_path)

        yield database

        database.close()
        if os.path.exists(db_path):
            os.remove(db_path)

    @pytest.fixture
    def battle(self):
        return BattleRecord(
            battle_id=9001,
            cluster_id=1,
            finished_at="2026-10-10T20:15:00+00:00",
            realm="us",
            season_number=27,
            map_id=17,
            arena_id=555,
            map_name="Trap",
            teams=[
                TeamEntry(result="win", clan_id=1000072593, team_number=1, clan_tag="PN31", players=[
                    PlayerBattleEntry(True, 501, "Alpha", 3001, 10, "Yamato"),
                    PlayerBattleEntry(False, 502, "Bravo", 3002, 10, "Des Moines"),
                ]),
                TeamEntry(result="loss", clan_id=999, team_number=2, players=[
                    PlayerBattleEntry(False, 901, "Foe", 4001, 10, "Montana"),
                ]),
            ],
        )

    def _player(self, **overrides):
        values = dict(
            player_id="501",
            clan_id="1000072593",
            username="Alpha",
            clan_tag="PN31",
            last_updated=1000,
            stats={"battles": 10, "wins": 6},
        )
        values.update(overrides)
        return PlayerRecord(**values)

    def test_database_creation(self, db):
        """Test database and tables are created."""
        cursor = db.conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}

        assert {'players', 'clan_battles', 'clan_battle_teams', 'clan_battle_players'} <= tables

    def test_reopen_is_idempotent(self, db):
        db.upsert_player(self._player())
        again = Database(db.db_path)
        try:
            assert again.count_players() == 1
        finally:
            again.close()

    def test_upsert_player_roundtrip(self, db):
        db.upsert_player(self._player(originating_user_id="discord-42"))
        player = db.get_player("501")

        assert player.username == "Alpha"
        assert player.stats == {"battles": 10, "wins": 6}
        assert player.originating_user_id == "discord-42"
        assert db.get_player("999") is None

    def test_upsert_preserves_originating_user(self, db):
        db.upsert_player(self._player(originating_user_id="discord-42"))
        db.upsert_player(self._player(username="AlphaRenamed", last_updated=2000))

        player = db.get_player("501")
        assert player.username == "AlphaRenamed"
        assert player.originating_user_id == "discord-42"
        assert player.last_updated == 2000

    def test_last_updated_strictly_increases(self, db):
        db.upsert_player(self._player(last_updated=5000))
        db.upsert_player(self._player(last_updated=5000))
        assert db.get_player("501").last_updated == 5001

        db.upsert_player(self._player(last_updated=10))
        assert db.get_player("501").last_updated == 5002

    def test_get_all_players_by_clan(self, db):
        db.upsert_player(self._player())
        db.upsert_player(self._player(player_id="601", username="Other", clan_tag="PN30"))

        assert [p.player_id for p in db.get_all_players("pn31")] == ["501"]
        assert db.count_players() == 2

    def test_insert_and_get_battle(self, db, battle):
        db.insert_battle(battle)
        stored = db.get_battle(9001)

        assert stored.map_name == "Trap"
        assert [t.result for t in stored.teams] == ["win", "loss"]
        assert [p.name for p in stored.teams[0].players] == ["Alpha", "Bravo"]
        assert stored.teams[0].players[0].survived is True
        assert db.battle_exists(9001)
        assert db.get_battle(1) is None

    def test_duplicate_battle_raises(self, db, battle):
        db.insert_battle(battle)
        with pytest.raises(DuplicateKeyError):
            db.insert_battle(battle)
        assert db.count_battles() == 1
        assert len(db.get_battle_players(9001)) == 3

    def test_failed_battle_insert_leaves_nothing(self, db, battle):
        """A failure on the last player rolls back the battle and its teams."""
        battle.teams[1].players.append(PlayerBattleEntry(False, 902, None, 4002, 10, "Ohio"))

        with pytest.raises(PersistenceError) as exc_info:
            db.insert_battle(battle)
        assert not isinstance(exc_info.value, DuplicateKeyError)

        assert db.count_battles() == 0
        assert db.get_battle_players(9001) == []
        cursor = db.conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM clan_battle_teams")
        assert cursor.fetchone()[0] == 0

    def test_clan_battle_player_stats(self, db, battle):
        db.insert_battle(battle)
        second = BattleRecord(
            battle_id=9002,
            cluster_id=1,
            finished_at="2026-10-11T20:15:00+00:00",
            realm="us",
            season_number=27,
            map_id=18,
            arena_id=556,
            teams=[
                TeamEntry(result="loss", clan_id=1000072593, players=[
                    PlayerBattleEntry(True, 501, "Alpha", 3003, 10, "Shikishima"),
                ]),
            ],
        )
        db.insert_battle(second)

        stats = db.get_clan_battle_player_stats(1000072593)
        alpha = stats[0]
        assert alpha["player_name"] == "Alpha"
        assert alpha["battles"] == 2
        assert alpha["wins"] == 1
        assert alpha["win_rate"] == pytest.approx(50.0)
        assert alpha["survival_rate"] == pytest.approx(100.0)
        assert alpha["ship_usage"] == {"Yamato": 1, "Shikishima": 1}
        assert {s["player_name"] for s in stats} == {"Alpha", "Bravo"}

        windowed = db.get_clan_battle_player_stats(1000072593, start="2026-10-11T00:00:00+00:00")
        assert [(s["player_name"], s["battles"]) for s in windowed] == [("Alpha", 1)]

    def test_finished_at_stored_in_utc(self, db, battle):
        battle.finished_at = "2026-10-10T22:15:00+02:00"
        db.insert_battle(battle)

        assert db.get_battle(9001).finished_at == "2026-10-10T20:15:00+00:00"

    def test_window_compares_instants_not_text(self, db, battle):
        # 23:30 at -05:00 is 04:30 UTC on the 11th, so it falls inside the window.
        battle.finished_at = "2026-10-10T23:30:00-05:00"
        db.insert_battle(battle)

        inside = db.get_clan_battle_player_stats(1000072593, start="2026-10-11T00:00:00Z")
        assert {s["player_name"] for s in inside} == {"Alpha", "Bravo"}

        outside = db.get_clan_battle_player_stats(1000072593, start="2026-10-11T06:00:00+01:00")
        assert outside == []

    def test_zulu_timestamp_accepted(self, db, battle):
        battle.finished_at = "2026-10-10T20:15:00Z"
        db.insert_battle(battle)

        assert db.get_battle(9001).finished_at == "2026-10-10T20:15:00+00:00"

    def test_unreadable_finish_time_rejected(self, db, battle):
        battle.finished_at = "last tuesday"
        with pytest.raises(PersistenceError):
            db.insert_battle(battle)
        assert db.count_battles() == 0

    def test_read_failures_raise_persistence_error(self, db):
        db.conn.close()

        with pytest.raises(PersistenceError):
            db.get_player("501")
        with pytest.raises(PersistenceError):
            db.get_battle(9001)
        db.conn = None
