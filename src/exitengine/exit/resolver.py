from __future__ import annotations

from datetime import datetime
from threading import Lock
import time
from typing import Callable, Optional

from ..config import settings
from ..utils.logging import get_logger
from .exceptions import ProfileNotFoundError
from .models import Position, utcnow
from .profile import DEFAULT_PROFILE, ExitProfile, SymbolOverride
from .stores import ProfileStore

log = get_logger(__name__)


class ProfileResolver:
    """Resolve the effective :class:`ExitProfile` of a position.

    Resolution order, first match wins:

    1. the profile assigned to the position (``exit_profile_id``)
    2. an enabled symbol override already in effect
    3. the configured default profile, then :data:`DEFAULT_PROFILE`

    Store reads go through a TTL cache.  The resolver subscribes to the
    store's write hooks so edits invalidate the affected entries at once.
    """

    def __init__(
        self,
        store: ProfileStore,
        *,
        default_profile_id: str | None = None,
        ttl_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        fallback: ExitProfile = DEFAULT_PROFILE,
    ) -> None:
        self.store = store
        self.default_profile_id = default_profile_id or settings.default_profile_id
        self.ttl_s = settings.profile_cache_ttl_s if ttl_s is None else ttl_s
        self.fallback = fallback
        self._clock = clock
        self._profiles: dict[str, tuple[float, Optional[ExitProfile]]] = {}
        self._overrides: dict[str, tuple[float, Optional[SymbolOverride]]] = {}
        # bumped by every invalidation; a load that raced one is not cached
        self._generations: dict[tuple[str, str], int] = {}
        self._epoch = 0
        self._lock = Lock()
        store.subscribe(self.invalidate)

    # ------------------------------------------------------------------
    # cache
    def invalidate(self, profile_id: str | None = None, symbol: str | None = None) -> None:
        """Drop cached entries.  Without arguments the whole cache is cleared."""
        with self._lock:
            if profile_id is None and symbol is None:
                self._profiles.clear()
                self._overrides.clear()
                self._epoch += 1
                return
            if profile_id is not None:
                self._profiles.pop(profile_id, None)
                self._bump("profile", profile_id)
            if symbol is not None:
                self._overrides.pop(symbol, None)
                self._bump("override", symbol)

    def _bump(self, kind: str, key: str) -> None:
        self._generations[(kind, key)] = self._generations.get((kind, key), 0) + 1

    def _generation(self, kind: str, key: str) -> tuple[int, int]:
        return self._epoch, self._generations.get((kind, key), 0)

    def _cached(self, kind: str, cache: dict, key: str, loader: Callable):
        now = self._clock()
        with self._lock:
            hit = cache.get(key)
            if hit is not None and hit[0] > now:
                return hit[1]
            generation = self._generation(kind, key)
        value = loader(key)
        with self._lock:
            if self._generation(kind, key) == generation:
                cache[key] = (now + self.ttl_s, value)
            else:
                log.debug("%s %s changed while loading, not cached", kind, key)
        return value

    def _active_profile(self, profile_id: str) -> ExitProfile:
        profile = self._cached("profile", self._profiles, profile_id, self.store.get_profile)
        if profile is None:
            raise ProfileNotFoundError(f"profile {profile_id!r} not found")
        if not profile.is_active:
            raise ProfileNotFoundError(f"profile {profile_id!r} is inactive")
        return profile

    # ------------------------------------------------------------------
    def resolve(self, position: Position, now: datetime | None = None) -> ExitProfile:
        now = now or utcnow()

        if position.exit_profile_id:
            try:
                return self._active_profile(position.exit_profile_id)
            except ProfileNotFoundError as e:
                log.warning("position %s: %s, falling through", position.position_id, e)

        override = self._cached("override", self._overrides, position.symbol, self.store.get_override)
        if override is not None and override.is_effective(now):
            try:
                return self._active_profile(override.profile_id)
            except ProfileNotFoundError as e:
                log.warning("override for %s: %s, falling through", position.symbol, e)

        try:
            return self._active_profile(self.default_profile_id)
        except ProfileNotFoundError as e:
            log.warning("default profile unavailable (%s), using built-in", e)
        return self.fallback


__all__ = ["ProfileResolver"]
