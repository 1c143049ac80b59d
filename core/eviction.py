# core/eviction.py
"""Composite-score eviction for the entry store.

The victim is the entry with the lowest score

    priority * 1000 + access_count * 100 - age_seconds - idle_seconds

Ties go to the entry inserted first: the store keeps entries in insertion
order (a re-`set` moves a key to the end) and `min()` returns the first
minimum it meets.
"""

from __future__ import annotations

from collections.abc import Iterable

from core.cache_entry import CacheEntry

PRIORITY_WEIGHT: float = 1000.0
ACCESS_WEIGHT: float = 100.0


def eviction_score(entry: CacheEntry, now: float) -> float:
    """Higher is safer. Lower scores are evicted first."""
    return (
        entry.priority * PRIORITY_WEIGHT
        + entry.access_count * ACCESS_WEIGHT
        - entry.age(now)
        - entry.idle(now)
    )


def select_victim(entries: Iterable[CacheEntry], now: float) -> CacheEntry | None:
    """Return the entry to evict, or None when there is nothing to evict.

    Args:
        entries: Entries in insertion order.
        now: Current store clock reading.
    """
    victim: CacheEntry | None = None
    lowest = float("inf")
    for entry in entries:
        score = eviction_score(entry, now)
        if score < lowest:
            lowest = score
            victim = entry
    return victim
