from dataclasses import replace
from datetime import timedelta

from conftest import NOW, make_position
from exitengine.exit.profile import DEFAULT_PROFILE, ExitProfile, SymbolOverride, TriggerConfig
from exitengine.exit.resolver import ProfileResolver
from exitengine.exit.stores import MemoryProfileStore


class FakeClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


class CountingStore(MemoryProfileStore):
    def __init__(self, *a, **kw):
        self.reads = 0
        super().__init__(*a, **kw)

    def get_profile(self, profile_id):
        self.reads += 1
        return super().get_profile(profile_id)


TIGHT = ExitProfile(profile_id="tight", hardstop=None, sl1=TriggerConfig(base_pct=-0.01))
SWING = ExitProfile(profile_id="swing", sl1=TriggerConfig(base_pct=-0.05))
HOUSE = replace(DEFAULT_PROFILE, profile_id="house")


def _resolver(store, **kw):
    kw.setdefault("default_profile_id", "house")
    kw.setdefault("ttl_s", 30.0)
    return ProfileResolver(store, **kw)


def test_position_profile_wins():
    store = MemoryProfileStore([TIGHT, SWING, HOUSE], [SymbolOverride("005930", "swing")])
    resolver = _resolver(store)
    pos = make_position(exit_profile_id="tight")
    assert resolver.resolve(pos, NOW).profile_id == "tight"


def test_override_then_default():
    store = MemoryProfileStore([SWING, HOUSE], [SymbolOverride("005930", "swing")])
    resolver = _resolver(store)
    assert resolver.resolve(make_position(), NOW).profile_id == "swing"
    assert resolver.resolve(make_position(symbol="000660"), NOW).profile_id == "house"


def test_override_not_yet_effective_or_disabled():
    store = MemoryProfileStore(
        [SWING, HOUSE],
        [
            SymbolOverride("005930", "swing", effective_from=NOW + timedelta(hours=1)),
            SymbolOverride("000660", "swing", enabled=False),
        ],
    )
    resolver = _resolver(store)
    assert resolver.resolve(make_position(), NOW).profile_id == "house"
    assert resolver.resolve(make_position(symbol="000660"), NOW).profile_id == "house"
    later = NOW + timedelta(hours=2)
    assert resolver.resolve(make_position(), later).profile_id == "swing"


def test_missing_and_inactive_profiles_fall_through():
    store = MemoryProfileStore([replace(TIGHT, is_active=False), HOUSE])
    resolver = _resolver(store)
    assert resolver.resolve(make_position(exit_profile_id="tight"), NOW).profile_id == "house"
    assert resolver.resolve(make_position(exit_profile_id="gone"), NOW).profile_id == "house"


def test_builtin_fallback_when_default_missing():
    resolver = _resolver(MemoryProfileStore(), default_profile_id="nope")
    assert resolver.resolve(make_position(), NOW) is DEFAULT_PROFILE


def test_reads_are_cached_until_ttl():
    clock = FakeClock()
    store = CountingStore([HOUSE])
    resolver = _resolver(store, ttl_s=10.0, clock=clock)

    resolver.resolve(make_position(), NOW)
    resolver.resolve(make_position(), NOW)
    assert store.reads == 1

    clock.t = 11.0
    resolver.resolve(make_position(), NOW)
    assert store.reads == 2


def test_save_invalidates_cache():
    store = MemoryProfileStore([TIGHT, HOUSE])
    resolver = _resolver(store, ttl_s=3600.0)
    pos = make_position(exit_profile_id="tight")
    assert resolver.resolve(pos, NOW).sl1.base_pct == -0.01

    store.save_profile(replace(TIGHT, sl1=TriggerConfig(base_pct=-0.02)))
    assert resolver.resolve(pos, NOW).sl1.base_pct == -0.02

    store.deactivate_profile("tight")
    assert resolver.resolve(pos, NOW).profile_id == "house"


def test_new_override_visible_immediately():
    store = MemoryProfileStore([SWING, HOUSE])
    resolver = _resolver(store, ttl_s=3600.0)
    assert resolver.resolve(make_position(), NOW).profile_id == "house"

    store.set_override(SymbolOverride("005930", "swing"))
    assert resolver.resolve(make_position(), NOW).profile_id == "swing"

    store.delete_override("005930")
    assert resolver.resolve(make_position(), NOW).profile_id == "house"


class RacingStore(MemoryProfileStore):
    """Store where a profile edit lands while a read is in flight."""

    def __init__(self, *a, **kw):
        self.pending = None
        super().__init__(*a, **kw)

    def get_profile(self, profile_id):
        profile = super().get_profile(profile_id)
        if self.pending is not None:
            edit, self.pending = self.pending, None
            self.save_profile(edit)
        return profile


def test_write_during_read_is_not_masked_by_cache():
    store = RacingStore([replace(HOUSE, description="old")])
    resolver = _resolver(store)
    store.pending = replace(HOUSE, description="new")

    assert resolver.resolve(make_position(), NOW).description == "old"
    assert resolver.resolve(make_position(), NOW).description == "new"
    assert resolver.resolve(make_position(), NOW).description == "new"


def test_full_invalidation_during_read_is_not_masked():
    store = CountingStore([HOUSE])
    resolver = _resolver(store, clock=FakeClock())
    real = store.get_profile

    def clearing_read(profile_id):
        profile = real(profile_id)
        resolver.invalidate()
        return profile

    store.get_profile = clearing_read
    resolver.resolve(make_position(), NOW)
    store.get_profile = real
    resolver.resolve(make_position(), NOW)
    assert store.reads == 2
