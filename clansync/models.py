# clansync/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


REGIONS = ("na", "eu", "asia", "ru")
TEAM_RESULTS = ("win", "loss", "draw", "unknown")

OPERATION_PLAYERS = "players"
OPERATION_BATTLES = "battles"
OPERATIONS = (OPERATION_PLAYERS, OPERATION_BATTLES)
# Players then battles for every clan, as the scheduled full update does.
OPERATION_ALL = "all"

# Numeric player stats compared by the reconciler to detect a material change.
TRACKED_PLAYER_STATS = (
    "battles",
    "wins",
    "losses",
    "draws",
    "survived_battles",
    "damage_dealt",
    "frags",
    "xp",
    "planes_killed",
    "ships_spotted",
    "capture_points",
)


def utc_iso(value: Any) -> str:
    """Normalize an ISO 8601 timestamp to UTC ``YYYY-MM-DDTHH:MM:SS+00:00``.

    A trailing ``Z`` is accepted and naive values are taken as UTC. Stored
    finish times share this form so they order correctly as text.
    Raises ValueError for anything that is not an ISO timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="seconds")


class Secret:
    """Opaque credential wrapper that never renders its value."""

    __slots__ = ("_value",)

    def __init__(self, value: Optional[str]):
        self._value = value or ""

    def reveal(self) -> str:
        return self._value

    def __bool__(self) -> bool:
        return bool(self._value)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Secret) and other._value == self._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __repr__(self) -> str:
        return "Secret('***')" if self._value else "Secret('')"

    __str__ = __repr__


@dataclass(frozen=True)
class ClanIdentity:
    clan_id: int
    tag: str
    name: str
    region: str = "na"
    credential: Secret = field(default_factory=lambda: Secret(None), compare=False)
    color: str = "#0099ff"

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the clan; the credential is reduced to a flag."""
        return {
            "clan_id": self.clan_id,
            "tag": self.tag,
            "name": self.name,
            "region": self.region,
            "color": self.color,
            "has_credential": bool(self.credential),
        }


@dataclass
class PlayerRecord:
    player_id: str
    clan_id: str
    username: str
    clan_tag: str
    last_updated: int
    stats: Dict[str, Any] = field(default_factory=dict)
    originating_user_id: str = ""


@dataclass
class PlayerBattleEntry:
    survived: bool
    player_id: int
    name: str
    ship_id: int
    ship_level: int
    ship_name: str


@dataclass
class TeamEntry:
    result: str = "unknown"
    clan_id: Optional[int] = None
    team_number: Optional[int] = None
    division_rating: Optional[int] = None
    league: Optional[int] = None
    division: Optional[int] = None
    rating_delta: Optional[int] = None
    clan_tag: Optional[str] = None
    clan_name: Optional[str] = None
    players: List[PlayerBattleEntry] = field(default_factory=list)


@dataclass
class BattleRecord:
    battle_id: int
    cluster_id: Optional[int]
    finished_at: str
    realm: Optional[str]
    season_number: Optional[int]
    map_id: Optional[int]
    arena_id: Optional[int]
    teams: List[TeamEntry] = field(default_factory=list)
    map_name: Optional[str] = None


@dataclass(frozen=True)
class ItemError:
    item_id: str
    error_kind: str


@dataclass
class SyncOutcome:
    """Tally for one clan run. Only mutate through the record_* methods."""

    clan_tag: str
    operation: str = OPERATION_PLAYERS
    succeeded: int = 0
    failed: int = 0
    new_records: int = 0
    errors: List[ItemError] = field(default_factory=list)
    cancelled: bool = False

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    def record_success(self, new: bool = False) -> None:
        self.succeeded += 1
        if new:
            self.new_records += 1

    def record_failure(self, item_id: Any, error_kind: str) -> None:
        self.failed += 1
        self.errors.append(ItemError(item_id=str(item_id), error_kind=error_kind))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clan_tag": self.clan_tag,
            "operation": self.operation,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "new_records": self.new_records,
            "cancelled": self.cancelled,
            "errors": [
                {"item_id": e.item_id, "error_kind": e.error_kind}
                for e in self.errors
            ],
        }


@dataclass
class BatchOutcome:
    outcomes: List[SyncOutcome] = field(default_factory=list)

    @property
    def total_succeeded(self) -> int:
        return sum(o.succeeded for o in self.outcomes)

    @property
    def total_failed(self) -> int:
        return sum(o.failed for o in self.outcomes)

    @property
    def total_attempted(self) -> int:
        return sum(o.attempted for o in self.outcomes)

    @property
    def total_new_records(self) -> int:
        return sum(o.new_records for o in self.outcomes)

    @property
    def cancelled(self) -> bool:
        return any(o.cancelled for o in self.outcomes)

    def get(self, clan_tag: str) -> Optional[SyncOutcome]:
        wanted = clan_tag.upper()
        for outcome in self.outcomes:
            if outcome.clan_tag.upper() == wanted:
                return outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_attempted": self.total_attempted,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "total_new_records": self.total_new_records,
            "cancelled": self.cancelled,
            "clans": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class FullUpdateOutcome:
    """Players then battles for the same set of clans."""

    players: BatchOutcome
    battles: BatchOutcome

    @property
    def total_failed(self) -> int:
        return self.players.total_failed + self.battles.total_failed

    @property
    def cancelled(self) -> bool:
        return self.players.cancelled or self.battles.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_failed": self.total_failed,
            "cancelled": self.cancelled,
            "players": self.players.to_dict(),
            "battles": self.battles.to_dict(),
        }
