"""
Entity resolver: who owns and who created a rented agent, and where its
audit events go.

CachingEntityResolver tries, in order: a TTL cache, the registry, then an
optional fallback resolver.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .errors import DependencyError


@dataclass(frozen=True)
class EntityInfo:
    owner: str
    audit_topic: str
    creator: str


class EntityResolver:
    """Resolve an entity id to its owner, creator and audit topic."""

    def resolve(self, entity_id: str) -> EntityInfo:
        raise NotImplementedError


class EntityRegistry:
    """External registry lookup. Returns None when the entity is unknown."""

    def lookup(self, entity_id: str) -> Optional[EntityInfo]:
        raise NotImplementedError


class CachingEntityResolver(EntityResolver):
    """Cache -> registry -> fallback resolver chain."""

    def __init__(self, registry: EntityRegistry,
                 fallback: Optional[EntityResolver] = None,
                 ttl_seconds: int = 300,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[logging.Logger] = None):
        self.registry = registry
        self.fallback = fallback
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._logger = logger or logging.getLogger("rentals.resolver")
        self._cache: Dict[str, Tuple[EntityInfo, float]] = {}
        self._lock = threading.Lock()

    def _log(self, msg: str, level: str = "info") -> None:
        level = "warning" if level == "warn" else level
        self._logger.log(getattr(logging, level.upper(), logging.INFO),
                         f"rental: resolver: {msg}")

    def prime(self, entity_id: str, info: EntityInfo) -> None:
        """Seed the cache, e.g. right after the entity was registered."""
        with self._lock:
            self._cache[entity_id] = (info, self._clock())

    def invalidate(self, entity_id: str) -> None:
        with self._lock:
            self._cache.pop(entity_id, None)

    def resolve(self, entity_id: str) -> EntityInfo:
        now = self._clock()
        with self._lock:
            hit = self._cache.get(entity_id)
        if hit is not None and now - hit[1] < self.ttl_seconds:
            return hit[0]

        info = None
        try:
            info = self.registry.lookup(entity_id)
        except Exception as e:
            self._log(f"registry lookup failed for {entity_id}: {e}", level="warn")

        if info is None and self.fallback is not None:
            try:
                info = self.fallback.resolve(entity_id)
            except Exception as e:
                self._log(f"fallback resolve failed for {entity_id}: {e}", level="warn")

        if info is None:
            raise DependencyError("resolver", f"could not resolve entity {entity_id}")

        with self._lock:
            self._cache[entity_id] = (info, now)
        return info
