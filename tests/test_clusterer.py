"""
Clusterer Tests
===============

Covers headline clustering: the multi-source merge scenario, idempotent
ingest, order independence, monotonic growth, retirement, and the
source-change helpers used by the alert gate.
"""

import itertools
from datetime import timedelta

import pytest

from radar.analysis.clusterer import (
    Clusterer,
    ClusterStore,
    diversity_crossed,
    tier1_additions,
)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def strike_items(make_item):
    """Three reports of the same strike from tier 1, 2 and 4 sources."""
    return [
        make_item("a", "Iran launches strike on X", source="Reuters", tier=1),
        make_item("b", "Iran strikes X facility", source="BBC World", tier=2),
        make_item("c", "Tehran attacks X", source="Telegram OSINT", tier=4),
    ]


def memberships(store: ClusterStore) -> set[frozenset[str]]:
    return {frozenset(e.member_item_ids) for e in store.active_events()}


# ============================================================================
# TEST: MERGING
# ============================================================================

class TestMerging:

    def test_three_headlines_form_one_event(self, strike_items, config):
        store = ClusterStore()
        events = Clusterer(store, config).ingest(strike_items, now=strike_items[0].published_at)

        assert len(events) == 1
        event = events[0]
        assert event.source_count == 3
        assert [s.tier for s in event.top_sources] == [1, 2, 4]
        assert event.source_names == ["Reuters", "BBC World", "Telegram OSINT"]
        assert event.member_item_ids == {"a", "b", "c"}
        assert event.primary_title == "Iran launches strike on X"

    def test_unrelated_headline_starts_new_event(self, strike_items, make_item, config):
        store = ClusterStore()
        items = strike_items + [make_item("d", "Fed holds interest rates steady")]
        Clusterer(store, config).ingest(items, now=items[0].published_at)

        assert memberships(store) == {frozenset({"a", "b", "c"}), frozenset({"d"})}

    def test_primary_title_prefers_tier_then_earliest(self, make_item, t0, config):
        store = ClusterStore()
        clusterer = Clusterer(store, config)
        clusterer.ingest(
            [make_item("n1", "Ceasefire talks resume in Cairo", source="Blog", tier=3)],
            now=t0,
        )
        events = clusterer.ingest(
            [
                make_item(
                    "n2",
                    "Ceasefire talks resume in Cairo today",
                    source="AP News",
                    tier=1,
                    published_at=t0 + timedelta(minutes=5),
                )
            ],
            now=t0 + timedelta(minutes=5),
        )

        assert events[0].primary_title == "Ceasefire talks resume in Cairo today"
        assert events[0].top_sources[0].name == "AP News"

    def test_configured_tier_overrides_item_tier(self, make_item, t0):
        from radar.analysis.config import RadarConfig

        config = RadarConfig(source_tiers={"Reuters": 1})
        store = ClusterStore()
        events = Clusterer(store, config).ingest(
            [make_item("x1", "Oil tanker seized in Gulf", source="Reuters", tier=3)], now=t0
        )

        assert events[0].top_sources[0].tier == 1


# ============================================================================
# TEST: IDEMPOTENCE AND ORDER INDEPENDENCE
# ============================================================================

class TestIdempotence:

    def test_duplicate_in_same_batch(self, strike_items, config):
        store = ClusterStore()
        batch = strike_items + [strike_items[0]]
        Clusterer(store, config).ingest(batch, now=strike_items[0].published_at)

        assert memberships(store) == {frozenset({"a", "b", "c"})}

    def test_reingest_in_later_tick_changes_nothing(self, strike_items, config, t0):
        store = ClusterStore()
        clusterer = Clusterer(store, config)
        clusterer.ingest(strike_items, now=t0)
        before = memberships(store)

        changed = clusterer.ingest([strike_items[1]], now=t0 + timedelta(minutes=30))

        assert changed == []
        assert memberships(store) == before

    def test_retired_item_is_not_reclustered(self, strike_items, config, t0):
        store = ClusterStore()
        clusterer = Clusterer(store, config)
        clusterer.ingest(strike_items, now=t0)

        changed = clusterer.ingest([strike_items[0]], now=t0 + timedelta(hours=30))

        assert changed == []
        assert len(store.active) == 0
        assert len(store.retired) == 1


class TestOrderIndependence:

    def test_every_permutation_gives_same_events(self, strike_items, make_item, config, t0):
        items = strike_items + [make_item("d", "Fed holds interest rates steady")]
        results = set()
        for perm in itertools.permutations(items):
            store = ClusterStore()
            Clusterer(store, config).ingest(list(perm), now=t0)
            results.add(frozenset(memberships(store)))

        assert len(results) == 1

    def test_identical_titles_merge_regardless_of_order(self, make_item, config, t0):
        first = make_item("p1", "Ceasefire talks resume in Cairo", source="AP News", tier=1)
        second = make_item("p2", "CEASEFIRE talks resume in Cairo!", source="Blog", tier=3)

        for batch in ([first, second], [second, first]):
            store = ClusterStore()
            events = Clusterer(store, config).ingest(batch, now=t0)
            assert len(events) == 1
            assert events[0].member_item_ids == {"p1", "p2"}


# ============================================================================
# TEST: LIFETIME
# ============================================================================

class TestLifetime:

    def test_members_and_last_updated_never_shrink(self, make_item, config, t0):
        store = ClusterStore()
        clusterer = Clusterer(store, config)
        title = "Power grid strike hits Kharkiv"
        sizes, updated = [], []

        for i, offset in enumerate([0, 60, 30, 120]):
            published = t0 + timedelta(minutes=offset)
            clusterer.ingest(
                [make_item(f"k{i}", title, source=f"src{i}", tier=2, published_at=published)],
                now=t0 + timedelta(minutes=150),
            )
            (event,) = store.active_events()
            sizes.append(len(event.member_item_ids))
            updated.append(event.last_updated)

        assert sizes == sorted(sizes) == [1, 2, 3, 4]
        assert updated == sorted(updated)
        assert event.first_seen == t0

    def test_event_retires_after_inactivity(self, make_item, config, t0):
        store = ClusterStore()
        clusterer = Clusterer(store, config)
        clusterer.ingest([make_item("r1", "Port strike halts exports")], now=t0)
        (old,) = store.active_events()

        later = t0 + timedelta(hours=25)
        events = clusterer.ingest(
            [make_item("r2", "Port strike halts exports", published_at=later)], now=later
        )

        assert events[0].id != old.id
        assert store.retired[old.id].retired is True
        assert store.retired[old.id].member_item_ids == {"r1"}

    def test_retired_history_is_bounded(self, make_item, t0):
        from radar.analysis.config import RadarConfig

        config = RadarConfig(retired_history_limit=2)
        store = ClusterStore()
        clusterer = Clusterer(store, config)
        titles = ["Alpha port closes", "Bravo mine floods", "Charlie dam breaks"]
        clusterer.ingest(
            [make_item(f"h{i}", t) for i, t in enumerate(titles)], now=t0
        )

        clusterer.retire_inactive(t0 + timedelta(days=2))

        assert len(store.retired) == 2
        assert len(store.item_index) == 2

    def test_stores_are_independent(self, make_item, config, t0):
        store_a, store_b = ClusterStore(), ClusterStore()
        Clusterer(store_a, config).ingest([make_item("s1", "Bridge collapse in Baltimore")], now=t0)

        assert len(store_a) == 1
        assert len(store_b) == 0

    def test_fork_does_not_touch_original(self, make_item, config, t0):
        store = ClusterStore()
        Clusterer(store, config).ingest([make_item("f1", "Bridge collapse in Baltimore")], now=t0)
        fork = store.fork()

        Clusterer(fork, config).ingest(
            [make_item("f2", "Bridge collapse in Baltimore", source="AP News")], now=t0
        )

        assert store.active_events()[0].member_item_ids == {"f1"}
        assert fork.active_events()[0].member_item_ids == {"f1", "f2"}

    def test_fork_shares_retired_history(self, make_item, config, t0):
        store = ClusterStore()
        clusterer = Clusterer(store, config)
        clusterer.ingest(
            [make_item(f"old{i}", f"Harbour {i} closes") for i in range(200)],
            now=t0,
        )
        clusterer.ingest(
            [make_item("live", "Bridge collapse in Baltimore", published_at=t0 + timedelta(days=2))],
            now=t0 + timedelta(days=2),
        )
        assert len(store.retired) == 200

        fork = store.fork()

        assert all(fork.retired[i] is e for i, e in store.retired.items())
        assert fork.retired is not store.retired
        assert fork.item_index == store.item_index
        (live,) = store.active_events()
        assert fork.active[live.id] is not live
        assert fork.active[live.id] == live

    def test_fork_retirement_leaves_original_history(self, make_item, t0):
        from radar.analysis.config import RadarConfig

        config = RadarConfig(retired_history_limit=1)
        store = ClusterStore()
        clusterer = Clusterer(store, config)
        clusterer.ingest([make_item("a1", "Alpha port closes")], now=t0)
        clusterer.retire_inactive(t0 + timedelta(days=2))

        fork = store.fork()
        Clusterer(fork, config).ingest(
            [make_item("b1", "Bravo mine floods", published_at=t0 + timedelta(days=2))],
            now=t0 + timedelta(days=2),
        )
        Clusterer(fork, config).retire_inactive(t0 + timedelta(days=4))

        assert list(store.retired) != list(fork.retired)
        assert "a1" in store.item_index
        assert "a1" not in fork.item_index

    def test_adopt_restores_matching(self, make_item, config, t0):
        store = ClusterStore()
        Clusterer(store, config).ingest([make_item("m1", "Bridge collapse in Baltimore")], now=t0)
        event = store.active_events()[0]

        fresh = ClusterStore()
        clusterer = Clusterer(fresh, config)
        assert clusterer.adopt(event.model_copy(deep=True)) is True
        assert clusterer.adopt(event.model_copy(deep=True)) is False

        events = clusterer.ingest(
            [make_item("m2", "Bridge collapse in Baltimore", source="AP News")], now=t0
        )
        assert events[0].id == event.id


# ============================================================================
# TEST: SOURCE CHANGE HELPERS
# ============================================================================

class TestSourceChanges:

    def test_tier1_join_and_diversity_cross(self, make_item, config, t0):
        title = "Troops mass near border crossing"
        store = ClusterStore()
        clusterer = Clusterer(store, config)
        clusterer.ingest(
            [
                make_item("d1", title, source="Defense One", tier=3),
                make_item("d2", title, source="Telegram OSINT", tier=4),
            ],
            now=t0,
        )
        before = store.fork().active_events()[0]

        (after,) = clusterer.ingest(
            [
                make_item("d3", title, source="Reuters", tier=1),
                make_item("d4", title, source="AP News", tier=1),
                make_item("d5", title, source="BBC World", tier=2),
            ],
            now=t0,
        )

        assert tier1_additions(before, after) == ["AP News", "Reuters"]
        assert diversity_crossed(before, after) is True

    def test_new_event_is_not_a_source_change(self, make_item, config, t0):
        store = ClusterStore()
        (event,) = Clusterer(store, config).ingest(
            [make_item("e1", "Embassy evacuated in Khartoum", source="Reuters", tier=1)],
            now=t0,
        )

        assert tier1_additions(None, event) == []
        assert diversity_crossed(None, event) is False
