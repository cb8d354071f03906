"""Actor id to display name resolution."""
from __future__ import annotations

from typing import Dict, Mapping, Optional, Protocol

from pickupflow.core.auth import parse_pairs
from pickupflow.core.config import get_settings


class IdentityProvider(Protocol):
    def display_name(self, actor_id: str) -> Optional[str]:
        ...


class StaticIdentityProvider:
    """Directory backed by a fixed mapping, by default from ``ACTOR_DIRECTORY``."""

    def __init__(self, directory: Mapping[str, str] | None = None) -> None:
        if directory is None:
            directory = parse_pairs(get_settings().actor_directory, label="actor_directory")
        self._directory: Dict[str, str] = dict(directory)

    def display_name(self, actor_id: str) -> Optional[str]:
        return self._directory.get(actor_id)
