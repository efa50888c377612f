# clansync/clans.py
"""Clan registry: static clan table plus per-clan overrides from the environment.

The registry is built once per process by ``get_registry()``. Tags resolve
case-insensitively; numeric ids resolve exactly.
"""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from clansync.config import get_settings
from clansync.errors import ConfigurationError
from clansync.models import REGIONS, ClanIdentity, Secret

logger = logging.getLogger(__name__)

PLACEHOLDER_CLAN_ID = 1000000000

# tag -> (default id, name, colour, region)
BUILTIN_CLANS = (
    ("PN31", 1000072593, "Penetration Nation", "#0099ff", "na"),
    ("PN30", PLACEHOLDER_CLAN_ID, "Penetration Nation 30", "#00cc99", "na"),
    ("PNEU", PLACEHOLDER_CLAN_ID, "Penetration Nation EU", "#ff9900", "eu"),
    ("PN32", PLACEHOLDER_CLAN_ID, "Penetration Nation 32", "#cc00ff", "na"),
    ("PN", PLACEHOLDER_CLAN_ID, "Penetration", "#ff0066", "na"),
)
BUILTIN_DEFAULT_TAG = "PN31"


def clan_key(value: Any) -> Union[str, int]:
    """Turn user input into a registry key: all-digit text is a clan id, anything else a tag."""
    text = str(value or "").strip()
    return int(text) if text.isdigit() else text


class ClanRegistry:
    """Immutable lookup over configured clans."""

    def __init__(self, clans: List[ClanIdentity], default_tag: Optional[str] = None):
        by_tag: Dict[str, ClanIdentity] = {}
        for clan in clans:
            key = clan.tag.upper()
            if key in by_tag:
                raise ConfigurationError(f"Duplicate clan tag '{clan.tag}'")
            if clan.region not in REGIONS:
                raise ConfigurationError(
                    f"Clan '{clan.tag}' has unknown region '{clan.region}'"
                )
            by_tag[key] = clan

        if default_tag and default_tag.upper() not in by_tag:
            raise ConfigurationError(f"Default clan '{default_tag}' is not configured")

        self._clans = tuple(clans)
        self._by_tag = by_tag
        self._default_tag = default_tag.upper() if default_tag else None

    def find(self, key: Union[str, int]) -> Optional[ClanIdentity]:
        """Return the clan for a tag or numeric id, or None."""
        if isinstance(key, bool):
            return None
        if isinstance(key, int):
            for clan in self._clans:
                if clan.clan_id == key:
                    return clan
            return None
        text = str(key or "").strip()
        if not text:
            return None
        return self._by_tag.get(text.upper())

    def resolve(self, key: Union[str, int]) -> ClanIdentity:
        clan = self.find(key)
        if clan is None:
            raise ConfigurationError(f"Clan '{key}' not found in configuration")
        return clan

    def list_all(self) -> List[ClanIdentity]:
        return list(self._clans)

    def all_tags(self) -> List[str]:
        return [clan.tag for clan in self._clans]

    def default_clan(self) -> ClanIdentity:
        if not self._default_tag:
            raise ConfigurationError("No default clan configured")
        return self._by_tag[self._default_tag]

    def __len__(self) -> int:
        return len(self._clans)

    def __iter__(self):
        return iter(self._clans)


def _parse_clan_id(raw: Any, tag: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Clan '{tag}' has invalid id {raw!r}")


def builtin_clans(env: Mapping[str, str]) -> List[ClanIdentity]:
    """Built-in clan table with <TAG>_CLAN_ID / <TAG>_COOKIES overrides."""
    clans: List[ClanIdentity] = []
    for tag, default_id, name, color, region in BUILTIN_CLANS:
        raw_id = (env.get(f"{tag}_CLAN_ID") or "").strip() or default_id
        clans.append(
            ClanIdentity(
                clan_id=_parse_clan_id(raw_id, tag),
                tag=tag,
                name=name,
                region=region,
                credential=Secret(env.get(f"{tag}_COOKIES")),
                color=color,
            )
        )
    return clans


def clans_from_file(path: str) -> tuple[List[ClanIdentity], Optional[str]]:
    """Load clans from a JSON file.

    Shape: {"default": "PN31", "clans": {"PN31": {"id": 1, "name": "...",
    "credential": "...", "color": "#...", "region": "na"}}}
    """
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"Clan config file not found: {path}")
    try:
        with file_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to read clan config file {path}: {e}")

    entries = data.get("clans") if isinstance(data, dict) else None
    if not isinstance(entries, dict) or not entries:
        raise ConfigurationError("'clans' must be a non-empty object")

    clans: List[ClanIdentity] = []
    for tag, entry in entries.items():
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Clan '{tag}' entry must be an object")
        clans.append(
            ClanIdentity(
                clan_id=_parse_clan_id(entry.get("id"), tag),
                tag=str(tag).upper(),
                name=str(entry.get("name") or tag),
                region=str(entry.get("region") or "na").lower(),
                credential=Secret(entry.get("credential") or entry.get("cookies")),
                color=str(entry.get("color") or "#0099ff"),
            )
        )
    return clans, data.get("default")


def load_registry(
    env: Optional[Mapping[str, str]] = None,
    clans_file: Optional[str] = None,
    default_tag: Optional[str] = None,
) -> ClanRegistry:
    """Build a registry from a clans file when given, else the built-in table."""
    env = os.environ if env is None else env
    if clans_file:
        clans, file_default = clans_from_file(clans_file)
        chosen_default = default_tag or file_default
        logger.info("Loaded %s clans from %s", len(clans), clans_file)
    else:
        clans = builtin_clans(env)
        chosen_default = default_tag or BUILTIN_DEFAULT_TAG

    for clan in clans:
        if not clan.credential:
            logger.debug("Clan %s has no ladder credential configured", clan.tag)
    return ClanRegistry(clans, default_tag=chosen_default)


@lru_cache(maxsize=1)
def get_registry() -> ClanRegistry:
    """Process-wide registry snapshot built from settings at first use."""
    settings = get_settings()
    return load_registry(
        clans_file=settings.clans_file,
        default_tag=settings.default_clan,
    )
