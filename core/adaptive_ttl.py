# core/adaptive_ttl.py
"""Compute per-key effective TTLs from access frequency.

Hot keys (more than 80% of all store requests) live 1.5x longer, cold keys
(under 20%) half as long. On top of that every recorded access adds a 10%
boost, capped at 2x:

    effective_ttl = base_ttl * multiplier * min(2.0, 1 + 0.1 * access_count)

A key that has never been read gets exactly `base_ttl`.
"""

from __future__ import annotations

HOT_FREQUENCY: float = 0.8
COLD_FREQUENCY: float = 0.2
HOT_MULTIPLIER: float = 1.5
COLD_MULTIPLIER: float = 0.5
NEUTRAL_MULTIPLIER: float = 1.0
BOOST_PER_ACCESS: float = 0.1
MAX_FREQUENCY_BOOST: float = 2.0


class AdaptiveTTLEngine:
    """Keeps the last frequency multiplier per key and derives effective TTLs."""

    def __init__(self) -> None:
        self._multipliers: dict[str, float] = {}

    @staticmethod
    def multiplier_for(frequency: float) -> float:
        if frequency > HOT_FREQUENCY:
            return HOT_MULTIPLIER
        if frequency < COLD_FREQUENCY:
            return COLD_MULTIPLIER
        return NEUTRAL_MULTIPLIER

    @staticmethod
    def frequency_boost(access_count: int) -> float:
        return min(MAX_FREQUENCY_BOOST, 1.0 + BOOST_PER_ACCESS * access_count)

    def update_frequency(self, key: str, key_accesses: int, total_requests: int) -> float:
        """Recompute and remember the multiplier for `key`.

        Args:
            key_accesses: Successful reads of `key` so far.
            total_requests: All reads (hits and misses) the store has served.
        """
        frequency = key_accesses / total_requests if total_requests > 0 else 0.0
        multiplier = self.multiplier_for(frequency)
        self._multipliers[key] = multiplier
        return multiplier

    def multiplier(self, key: str) -> float:
        """Last known multiplier for `key` (1.0 for keys never read)."""
        return self._multipliers.get(key, NEUTRAL_MULTIPLIER)

    def effective_ttl(self, key: str, base_ttl: float, access_count: int) -> float:
        return base_ttl * self.multiplier(key) * self.frequency_boost(access_count)

    def forget(self, key: str) -> None:
        self._multipliers.pop(key, None)

    def clear(self) -> None:
        self._multipliers.clear()

    def __len__(self) -> int:
        return len(self._multipliers)
