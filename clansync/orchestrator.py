"""Sync orchestrator: drives one-clan, all-clans and full-update runs, and player registration.

A run resolves the clan, fetches the remote sequence, reconciles each item in
arrival order and tallies the result into a SyncOutcome. Item and clan level
failures are absorbed into the outcome; only an unresolvable clan raises.

Run examples:
    python main.py sync --clan PN31 --operation players
    python main.py sync --all --operation battles --workers 2
    python main.py sync --all --operation all
    python main.py register --clan PN31 SomeCaptain --user 1234
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterator, Optional

from clansync.api_client import WargamingAPIClient
from clansync.clans import ClanRegistry, get_registry
from clansync.config import Settings, get_settings
from clansync.database import Database
from clansync.errors import ClanSyncError, ConfigurationError, RemoteApiError
from clansync.models import (
    OPERATION_BATTLES,
    OPERATION_PLAYERS,
    OPERATIONS,
    BatchOutcome,
    ClanIdentity,
    FullUpdateOutcome,
    SyncOutcome,
)
from clansync.reconciler import PlayerUpsertOutcome, Reconciler

logger = logging.getLogger(__name__)

UNEXPECTED_ERROR = "UnexpectedError"


def _log_event(level: int, event: str, clan_tag: str, **fields: Any) -> None:
    detail = " ".join(f"{key}={value}" for key, value in fields.items())
    logger.log(
        level,
        "%s clan=%s %s",
        event,
        clan_tag,
        detail,
        extra={"event": event, "clan_tag": clan_tag, "fields": fields},
    )


class SyncOrchestrator:
    def __init__(
        self,
        registry: ClanRegistry,
        client: WargamingAPIClient,
        reconciler: Reconciler,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        max_workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.client = client
        self.reconciler = reconciler
        self.max_retries = max(0, max_retries)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.max_workers = max(1, max_workers)
        self.sleep = sleep

    # --- Retry ---

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay before retry number ``attempt + 1``."""
        return min(self.backoff_base_seconds * (2 ** attempt), self.backoff_max_seconds)

    def _with_retry(
        self,
        fn: Callable[[], Any],
        clan_tag: str,
        item_id: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Call fn, retrying retryable RemoteApiErrors with exponential backoff."""
        attempt = 0
        while True:
            try:
                return fn()
            except RemoteApiError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                if cancel_event is not None and cancel_event.is_set():
                    raise
                delay = self.backoff_delay(attempt)
                _log_event(
                    logging.WARNING, "retry", clan_tag,
                    item=item_id, status=e.status_code, attempt=attempt + 1, delay=delay,
                )
                self.sleep(delay)
                attempt += 1

    # --- Item sources ---

    def _player_items(
        self,
        clan: ClanIdentity,
        outcome: SyncOutcome,
        cancel_event: Optional[threading.Event],
    ) -> Iterator[tuple[str, Callable[[], Any]]]:
        try:
            players = list(self._with_retry(
                lambda: self.client.fetch_players(clan), clan.tag, "roster", cancel_event
            ))
        except RemoteApiError as e:
            _log_event(logging.ERROR, "fetch-error", clan.tag, item="roster", error=str(e))
            outcome.record_failure("roster", e.kind)
            return
        except Exception:
            logger.exception("Unexpected error fetching roster for clan %s", clan.tag)
            outcome.record_failure("roster", UNEXPECTED_ERROR)
            return
        _log_event(logging.INFO, "fetch-roster", clan.tag, players=len(players))

        for account_id, fetch in players:
            def work(account_id=account_id, fetch=fetch):
                raw = self._with_retry(fetch, clan.tag, account_id, cancel_event)
                return self.reconciler.reconcile_player(raw, clan)

            yield account_id, work

    def _battle_items(
        self,
        clan: ClanIdentity,
        outcome: SyncOutcome,
        cancel_event: Optional[threading.Event],
        team: Optional[int] = None,
    ) -> Iterator[tuple[str, Callable[[], Any]]]:
        sides = self.client.TEAM_SIDES if team is None else (team,)
        seen = set()
        for side in sides:
            if cancel_event is not None and cancel_event.is_set():
                return
            item_id = f"battles:team{side}"
            try:
                battles = self._with_retry(
                    lambda side=side: list(self.client.fetch_battles(clan, team=side)),
                    clan.tag,
                    item_id,
                    cancel_event,
                )
            except RemoteApiError as e:
                _log_event(logging.ERROR, "fetch-error", clan.tag, item=item_id, error=str(e))
                outcome.record_failure(item_id, e.kind)
                continue
            except Exception:
                logger.exception("Unexpected error fetching %s for clan %s", item_id, clan.tag)
                outcome.record_failure(item_id, UNEXPECTED_ERROR)
                continue
            _log_event(logging.INFO, "fetch-battles", clan.tag, team=side, battles=len(battles))

            for index, raw in enumerate(battles):
                battle_id = raw.get("battle_id") if isinstance(raw, dict) else None
                if battle_id is not None:
                    if battle_id in seen:
                        continue
                    seen.add(battle_id)
                label = str(battle_id) if battle_id is not None else f"team{side}#{index}"

                yield label, (lambda raw=raw: self.reconciler.reconcile_battle(raw))

    # --- Runs ---

    def _run(
        self,
        clan: ClanIdentity,
        operation: str,
        cancel_event: Optional[threading.Event] = None,
        team: Optional[int] = None,
    ) -> SyncOutcome:
        outcome = SyncOutcome(clan_tag=clan.tag, operation=operation)
        if cancel_event is not None and cancel_event.is_set():
            outcome.cancelled = True
            _log_event(logging.INFO, "run-cancelled", clan.tag, operation=operation)
            return outcome

        _log_event(logging.INFO, "fetch-start", clan.tag, operation=operation)
        if operation == OPERATION_PLAYERS:
            items = self._player_items(clan, outcome, cancel_event)
        else:
            items = self._battle_items(clan, outcome, cancel_event, team=team)

        for item_id, work in items:
            if cancel_event is not None and cancel_event.is_set():
                outcome.cancelled = True
                break
            try:
                result = work()
            except ClanSyncError as e:
                _log_event(
                    logging.WARNING, "reconcile-item-error", clan.tag,
                    item=item_id, kind=e.kind, error=str(e),
                )
                outcome.record_failure(item_id, e.kind)
                continue
            except Exception:
                logger.exception("Unexpected error reconciling %s for clan %s", item_id, clan.tag)
                outcome.record_failure(item_id, UNEXPECTED_ERROR)
                continue
            outcome.record_success(new=result.is_new)

        if cancel_event is not None and cancel_event.is_set():
            outcome.cancelled = True

        _log_event(
            logging.INFO, "run-complete", clan.tag,
            operation=operation,
            attempted=outcome.attempted,
            succeeded=outcome.succeeded,
            failed=outcome.failed,
            new=outcome.new_records,
            cancelled=outcome.cancelled,
        )
        return outcome

    @staticmethod
    def _check_operation(operation: str) -> None:
        if operation not in OPERATIONS:
            raise ValueError(f"operation must be one of {OPERATIONS}, got {operation!r}")

    def sync_one_clan(
        self,
        tag: Any,
        operation: str = OPERATION_PLAYERS,
        cancel_event: Optional[threading.Event] = None,
        team: Optional[int] = None,
    ) -> SyncOutcome:
        """Sync one clan.

        Raises ConfigurationError if the clan cannot be resolved, or if a
        battle sync is requested for a clan without a ladder credential.
        """
        self._check_operation(operation)
        _log_event(logging.INFO, "resolve", str(tag), operation=operation)
        clan = self.registry.resolve(tag)
        if operation == OPERATION_BATTLES and not clan.credential:
            raise ConfigurationError(f"Clan '{clan.tag}' has no ladder credential configured")
        return self._run(clan, operation, cancel_event=cancel_event, team=team)

    def sync_clan_players(self, tag: Any, cancel_event: Optional[threading.Event] = None) -> SyncOutcome:
        return self.sync_one_clan(tag, OPERATION_PLAYERS, cancel_event=cancel_event)

    def sync_clan_battles(
        self,
        tag: Any,
        cancel_event: Optional[threading.Event] = None,
        team: Optional[int] = None,
    ) -> SyncOutcome:
        return self.sync_one_clan(tag, OPERATION_BATTLES, cancel_event=cancel_event, team=team)

    def _sync_guarded(
        self,
        clan: ClanIdentity,
        operation: str,
        cancel_event: Optional[threading.Event],
    ) -> SyncOutcome:
        """sync_one_clan for batch use: a failing clan becomes a fully failed outcome."""
        try:
            return self.sync_one_clan(clan.tag, operation, cancel_event=cancel_event)
        except ConfigurationError as e:
            _log_event(logging.ERROR, "run-aborted", clan.tag, error=str(e))
            outcome = SyncOutcome(clan_tag=clan.tag, operation=operation)
            outcome.record_failure(clan.tag, e.kind)
            return outcome
        except Exception:
            logger.exception("Unexpected error syncing clan %s", clan.tag)
            outcome = SyncOutcome(clan_tag=clan.tag, operation=operation)
            outcome.record_failure(clan.tag, UNEXPECTED_ERROR)
            return outcome

    def sync_all_clans(
        self,
        operation: str = OPERATION_PLAYERS,
        cancel_event: Optional[threading.Event] = None,
        max_workers: Optional[int] = None,
    ) -> BatchOutcome:
        """Sync every configured clan; outcomes follow registry order."""
        self._check_operation(operation)
        clans = self.registry.list_all()
        workers = max(1, max_workers or self.max_workers)

        if workers == 1 or len(clans) <= 1:
            outcomes = [self._sync_guarded(clan, operation, cancel_event) for clan in clans]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="clansync") as pool:
                futures = [
                    pool.submit(self._sync_guarded, clan, operation, cancel_event)
                    for clan in clans
                ]
                outcomes = [future.result() for future in futures]

        batch = BatchOutcome(outcomes=outcomes)
        logger.info(
            "batch-complete operation=%s clans=%s succeeded=%s failed=%s new=%s",
            operation,
            len(outcomes),
            batch.total_succeeded,
            batch.total_failed,
            batch.total_new_records,
            extra={"event": "batch-complete"},
        )
        return batch

    def sync_full_update(
        self,
        cancel_event: Optional[threading.Event] = None,
        max_workers: Optional[int] = None,
        tag: Any = None,
    ) -> FullUpdateOutcome:
        """Players for every clan, then battles for every clan.

        With ``tag`` only that clan is synced; an unknown tag raises
        ConfigurationError before anything runs.
        """
        if tag is None:
            players = self.sync_all_clans(OPERATION_PLAYERS, cancel_event, max_workers)
            battles = self.sync_all_clans(OPERATION_BATTLES, cancel_event, max_workers)
        else:
            clan = self.registry.resolve(tag)
            players = BatchOutcome([self._sync_guarded(clan, OPERATION_PLAYERS, cancel_event)])
            battles = BatchOutcome([self._sync_guarded(clan, OPERATION_BATTLES, cancel_event)])
        return FullUpdateOutcome(players=players, battles=battles)

    # --- Registration ---

    def register_player(
        self,
        tag: Any,
        name_or_id: Any,
        originating_user_id: str = "",
        cancel_event: Optional[threading.Event] = None,
    ) -> PlayerUpsertOutcome:
        """Add one player to a clan's tracked roster on behalf of a user.

        ``name_or_id`` is an account id when it is all digits, otherwise an
        exact in-game name looked up in the clan's realm. Raises
        ConfigurationError for an unknown clan, RemoteApiError (404) when no
        account matches, and any reconciler error unchanged.
        """
        clan = self.registry.resolve(tag)
        query = str(name_or_id or "").strip()
        if not query:
            raise ValueError("A player name or account id is required")
        _log_event(logging.INFO, "register", clan.tag, player=query)

        if query.isdigit():
            account_id = query
        else:
            account_id = self._with_retry(
                lambda: self.client.find_player_by_name(clan, query), clan.tag, query, cancel_event
            )
            if account_id is None:
                raise RemoteApiError(404, clan.tag, message=f"account/list: no player named {query}")

        raw = self._with_retry(
            lambda: self.client.fetch_player(clan, account_id), clan.tag, account_id, cancel_event
        )
        result = self.reconciler.reconcile_player(raw, clan, originating_user_id=originating_user_id)
        _log_event(logging.INFO, "register-complete", clan.tag, player=account_id, action=result.action)
        return result


def build_orchestrator(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    registry: Optional[ClanRegistry] = None,
) -> SyncOrchestrator:
    """Wire registry, client, database and reconciler from settings."""
    settings = settings or get_settings()
    registry = registry or get_registry()
    db = db or Database(settings.db_path)
    client = WargamingAPIClient.from_settings(settings)
    reconciler = Reconciler(db, staleness_threshold_seconds=settings.staleness_seconds)
    return SyncOrchestrator(
        registry,
        client,
        reconciler,
        max_retries=settings.max_retries,
        backoff_base_seconds=settings.backoff_base_seconds,
        backoff_max_seconds=settings.backoff_max_seconds,
        max_workers=settings.max_workers,
    )
