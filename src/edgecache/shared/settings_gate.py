"""
Settings gate - TTL cached module toggles.

The gate keeps one snapshot of the admin settings document and refreshes it
when the TTL lapses or after invalidate(). A failed fetch fails open: the
module is reported as enabled.
"""

import asyncio
import copy
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from .logging_config import get_logger
from .schemas import ModuleSettings

DEFAULT_SETTINGS_TTL = 300


class SettingsRepository(Protocol):
    """Storage of the admin settings document."""

    async def find_one(self) -> Optional[Dict[str, Any]]:
        ...

    async def create(self, document: Dict[str, Any]) -> Dict[str, Any]:
        ...


class InMemorySettingsRepository:
    """Process-local settings document store."""

    def __init__(self, document: Optional[Dict[str, Any]] = None):
        self.document = copy.deepcopy(document) if document is not None else None

    async def find_one(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.document)

    async def create(self, document: Dict[str, Any]) -> Dict[str, Any]:
        self.document = copy.deepcopy(document)
        return copy.deepcopy(self.document)

    async def update(self, active_modules: Dict[str, bool]) -> Dict[str, Any]:
        """Merge module flags into the document, creating it when missing."""
        if self.document is None:
            self.document = ModuleSettings().model_dump()
        self.document.setdefault('active_modules', {}).update(active_modules)
        return copy.deepcopy(self.document)


@dataclass
class FeatureGateSnapshot:
    """Cached settings document with its expiry."""
    document: ModuleSettings
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class SettingsGate:
    """TTL cache in front of a SettingsRepository."""

    def __init__(
        self,
        repository: SettingsRepository,
        ttl: int = DEFAULT_SETTINGS_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.ttl = ttl
        self.clock = clock
        self.snapshot: Optional[FeatureGateSnapshot] = None
        # Bumped by invalidate(); a refresh that overlaps one does not store its result
        self.generation = 0
        self.lock = asyncio.Lock()
        self.logger = get_logger(__name__, 'settings_gate')

    async def get_settings(self) -> ModuleSettings:
        """Return the cached document, fetching (or creating) it when stale.

        Raises whatever the repository raises; callers that must stay
        available use is_module_enabled().
        """
        snapshot = self.snapshot
        if snapshot is not None and snapshot.is_fresh(self.clock()):
            return snapshot.document

        async with self.lock:
            snapshot = self.snapshot
            if snapshot is not None and snapshot.is_fresh(self.clock()):
                return snapshot.document

            generation = self.generation
            raw = await self.repository.find_one()
            if raw is None:
                raw = await self.repository.create(ModuleSettings().model_dump())
                self.logger.info("Created default admin settings", operation="get_settings")

            document = ModuleSettings.model_validate(raw)
            if generation == self.generation:
                self.snapshot = FeatureGateSnapshot(document=document, expires_at=self.clock() + self.ttl)
                self.logger.debug("Settings snapshot refreshed", operation="get_settings")
            return document

    async def is_module_enabled(self, module_name: str) -> bool:
        try:
            settings = await self.get_settings()
        except Exception as e:
            self.logger.error(
                f"Settings fetch failed, allowing module {module_name}: {e}",
                operation="is_module_enabled",
                module_name=module_name,
            )
            return True
        return settings.is_enabled(module_name)

    def invalidate(self) -> None:
        """Drop the snapshot so the next check fetches fresh settings."""
        self.generation += 1
        self.snapshot = None
        self.logger.info("Settings snapshot invalidated", operation="invalidate")
