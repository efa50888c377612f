# clansync/errors.py

from typing import Optional


RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class ClanSyncError(Exception):
    """Base class for sync pipeline errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigurationError(ClanSyncError):
    """Raised when a clan cannot be resolved or required config is missing."""


class RemoteApiError(ClanSyncError):
    """Raised when the Wargaming API answers with a non-success status.

    ``status_code`` is None for timeouts and connection failures.
    """

    def __init__(
        self,
        status_code: Optional[int],
        clan_tag: Optional[str] = None,
        message: str = "",
        timed_out: bool = False,
    ):
        self.status_code = status_code
        self.clan_tag = clan_tag
        self.timed_out = timed_out
        label = "timeout" if timed_out else f"status {status_code}"
        text = f"Remote API error ({label}) for clan {clan_tag or 'n/a'}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)

    @property
    def retryable(self) -> bool:
        if self.timed_out:
            return True
        return self.status_code in RETRYABLE_STATUS_CODES


class MalformedRecordError(ClanSyncError):
    """Raised when a fetched record fails structural validation."""

    def __init__(self, message: str, item_id: Optional[str] = None):
        self.item_id = item_id
        super().__init__(message)


class PersistenceError(ClanSyncError):
    """Raised when a write through the persistence port fails."""


class DuplicateKeyError(PersistenceError):
    """Raised by insert_battle when the battle id is already stored."""
