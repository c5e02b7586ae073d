"""
Event clustering - collapses duplicate reporting into canonical events.

Incoming headlines are compared by token-set Jaccard similarity against the
retained title signatures of every active event. A match at or above the
threshold joins that event; otherwise the item starts a new one. Events stop
accepting members after the retirement window and become immutable history.
"""

import copy
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from radar.analysis.config import RadarConfig, jaccard, tokenize
from radar.analysis.types import ClusteredEvent, MemberRef, RawItem, SourceRef
from radar.utils import stable_hash, to_utc, utc_now


@dataclass
class _Signature:
    item_id: str
    tokens: frozenset[str]


@dataclass
class ClusterStore:
    """
    Owned clustering state: active events, retired history and the item index.

    One store per pipeline instance; nothing here is process-global.
    """

    active: dict[str, ClusteredEvent] = field(default_factory=dict)
    retired: "OrderedDict[str, ClusteredEvent]" = field(default_factory=OrderedDict)
    item_index: dict[str, str] = field(default_factory=dict)
    signatures: dict[str, list[_Signature]] = field(default_factory=dict)

    def fork(self) -> "ClusterStore":
        """
        Independent copy for a tick to work on.

        Retired events never change again, so the fork shares them with this
        store. Only active events are copied deeply.
        """
        return ClusterStore(
            active=copy.deepcopy(self.active),
            retired=OrderedDict(self.retired),
            item_index=dict(self.item_index),
            signatures={event_id: list(s) for event_id, s in self.signatures.items()},
        )

    def active_events(self) -> list[ClusteredEvent]:
        return list(self.active.values())

    def __len__(self) -> int:
        return len(self.active)


class Clusterer:
    """
    Groups raw news items into ClusteredEvents.

    Usage:
        clusterer = Clusterer(ClusterStore(), config)
        changed = clusterer.ingest(items, now=tick_time)
        for item, event_id in clusterer.assignments:
            ...
    """

    def __init__(self, store: ClusterStore, config: RadarConfig | None = None):
        self.store = store
        self.config = config or RadarConfig()
        self.assignments: list[tuple[RawItem, str]] = []

    def _tier(self, item: RawItem) -> int:
        return self.config.tier_for(item.source_name, item.tier)

    @staticmethod
    def _canonical_order(item: RawItem, tier: int) -> tuple:
        return (to_utc(item.published_at), tier, item.id)

    def ingest(
        self, items: list[RawItem], now: datetime | None = None
    ) -> list[ClusteredEvent]:
        """
        Cluster a batch of items.

        Args:
            items: Raw news items, in any order, possibly with duplicates
            now: Tick clock used for retirement (defaults to wall clock)

        Returns:
            Events created or updated by this batch
        """
        now = to_utc(now) if now else utc_now()
        self.assignments = []
        self.retire_inactive(now)

        # Dedupe by id before matching; the first copy of an id wins
        fresh: dict[str, RawItem] = {}
        duplicates = 0
        for item in items:
            if item.id in self.store.item_index or item.id in fresh:
                duplicates += 1
                continue
            fresh[item.id] = item

        ordered = sorted(
            fresh.values(), key=lambda i: self._canonical_order(i, self._tier(i))
        )

        changed: dict[str, ClusteredEvent] = {}
        created = 0
        for item in ordered:
            tokens = tokenize(item.title, self.config.token_aliases)
            event_id, similarity = self._best_match(tokens)

            if event_id is None:
                event = self._create_event(item, tokens)
                created += 1
                logger.debug(f"[cluster] new event {event.id}: {item.title[:60]}")
            else:
                event = self._merge(event_id, item, tokens)
                logger.debug(
                    f"[cluster] {item.id} -> {event_id} (jaccard={similarity:.2f})"
                )

            self.assignments.append((item, event.id))
            changed[event.id] = event

        if ordered or duplicates:
            logger.info(
                f"[cluster] {len(ordered)} items -> {len(changed)} events "
                f"({created} new, {duplicates} duplicates skipped, "
                f"{len(self.store.active)} active)"
            )
        return list(changed.values())

    def _best_match(self, tokens: frozenset[str]) -> tuple[str | None, float]:
        if not tokens:
            return None, 0.0

        best_id: str | None = None
        best = 0.0
        for event_id in self.store.active:
            for signature in self.store.signatures.get(event_id, []):
                sim = jaccard(tokens, signature.tokens)
                if sim > best or (sim == best and best_id and event_id < best_id):
                    best, best_id = sim, event_id

        if best_id is not None and best >= self.config.jaccard_threshold:
            return best_id, best
        return None, best

    def _create_event(self, item: RawItem, tokens: frozenset[str]) -> ClusteredEvent:
        tier = self._tier(item)
        published = to_utc(item.published_at)
        event = ClusteredEvent(
            id=stable_hash("event", item.id),
            primary_title=item.title,
            member_item_ids={item.id},
            top_sources=[SourceRef(name=item.source_name, tier=tier, first_seen=published)],
            first_seen=published,
            last_updated=published,
            members={
                item.id: MemberRef(
                    source_name=item.source_name,
                    tier=tier,
                    title=item.title,
                    published_at=published,
                )
            },
        )
        self.store.active[event.id] = event
        self.store.item_index[item.id] = event.id
        self.store.signatures[event.id] = [_Signature(item.id, tokens)]
        return event

    def _merge(
        self, event_id: str, item: RawItem, tokens: frozenset[str]
    ) -> ClusteredEvent:
        event = self.store.active[event_id]
        published = to_utc(item.published_at)

        event.members[item.id] = MemberRef(
            source_name=item.source_name,
            tier=self._tier(item),
            title=item.title,
            published_at=published,
        )
        event.member_item_ids.add(item.id)
        event.first_seen = min(event.first_seen, published)
        event.last_updated = max(event.last_updated, published)
        event.top_sources = rank_sources(event.members)
        event.primary_title = primary_title(event.members)
        self.store.item_index[item.id] = event_id

        signatures = self.store.signatures.setdefault(event_id, [])
        if tokens and all(s.tokens != tokens for s in signatures):
            signatures.append(_Signature(item.id, tokens))
            if len(signatures) > self.config.max_title_signatures:
                # Keep the founding headline, drop the oldest follower
                del signatures[1]
        return event

    def adopt(self, event: ClusteredEvent) -> bool:
        """Re-register a previously persisted active event. Returns False if known."""
        if event.id in self.store.active or event.retired:
            return False
        self.store.active[event.id] = event
        signatures = []
        for item_id, member in sorted(
            event.members.items(), key=lambda kv: (kv[1].published_at, kv[0])
        ):
            self.store.item_index[item_id] = event.id
            tokens = tokenize(member.title, self.config.token_aliases)
            if tokens and all(s.tokens != tokens for s in signatures):
                signatures.append(_Signature(item_id, tokens))
        for item_id in event.member_item_ids:
            self.store.item_index.setdefault(item_id, event.id)
        self.store.signatures[event.id] = signatures[: self.config.max_title_signatures]
        return True

    def retire_inactive(self, now: datetime) -> list[ClusteredEvent]:
        """Move events idle longer than the retirement window into history."""
        cutoff = to_utc(now) - self.config.event_retirement_window
        retiring = [e for e in self.store.active.values() if e.last_updated < cutoff]

        for event in retiring:
            event.retired = True
            del self.store.active[event.id]
            self.store.signatures.pop(event.id, None)
            self.store.retired[event.id] = event

        limit = self.config.retired_history_limit
        while len(self.store.retired) > limit:
            _, dropped = self.store.retired.popitem(last=False)
            for item_id in dropped.member_item_ids:
                self.store.item_index.pop(item_id, None)

        if retiring:
            logger.info(
                f"[cluster] retired {len(retiring)} events, {len(self.store.active)} active"
            )
        return retiring


def rank_sources(members: dict[str, MemberRef]) -> list[SourceRef]:
    """One entry per source, tier ascending, ties by first-seen time then name."""
    best: dict[str, SourceRef] = {}
    for member in members.values():
        current = best.get(member.source_name)
        if current is None:
            best[member.source_name] = SourceRef(
                name=member.source_name,
                tier=member.tier,
                first_seen=member.published_at,
            )
        else:
            current.tier = min(current.tier, member.tier)
            current.first_seen = min(current.first_seen, member.published_at)
    return sorted(best.values(), key=lambda s: (s.tier, s.first_seen, s.name))


def primary_title(members: dict[str, MemberRef]) -> str:
    """Headline of the highest-tier member, earliest publication on ties."""
    _, member = min(
        members.items(), key=lambda kv: (kv[1].tier, kv[1].published_at, kv[0])
    )
    return member.title


def tier1_additions(
    before: ClusteredEvent | None, after: ClusteredEvent
) -> list[str]:
    """Tier-1 sources that joined an already-known event."""
    if before is None:
        return []
    known = {s.name for s in before.top_sources if s.tier == 1}
    return [s.name for s in after.top_sources if s.tier == 1 and s.name not in known]


def diversity_crossed(before: ClusteredEvent | None, after: ClusteredEvent) -> bool:
    """True when coverage flips from majority-niche to majority-mainstream."""
    if before is None:
        return False
    was_niche = before.niche_count > before.mainstream_count
    now_mainstream = after.mainstream_count > after.niche_count
    return was_niche and now_mainstream
