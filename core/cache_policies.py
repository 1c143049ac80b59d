# core/cache_policies.py
"""
Cache policy definitions for the EFB cache namespaces.

This module provides the per-namespace store policies, the key-prefix routing
table and the TTL lookup tables the facade uses for weather, calculation and
remote tool data.
"""

from core.cache_entry import CachePolicy

ROUTE = "route"
WEATHER = "weather"
CALCULATION = "calculation"
MAP = "map"
REMOTE_TOOL = "remote_tool"
GENERAL = "general"

NAMESPACES: tuple[str, ...] = (ROUTE, WEATHER, CALCULATION, MAP, REMOTE_TOOL, GENERAL)

# First matching prefix wins; keys matching nothing go to the general store.
KEY_PREFIXES: tuple[tuple[str, str], ...] = (
    ("route:", ROUTE),
    ("waypoint:", ROUTE),
    ("weather:", WEATHER),
    ("calculation:", CALCULATION),
    ("tile:", MAP),
    ("map:", MAP),
    ("tool:", REMOTE_TOOL),
)

WEATHER_TTLS: dict[str, float] = {
    "current": 300.0,
    "forecast": 1800.0,
    "metar": 600.0,
    "taf": 1800.0,
    "alerts": 300.0,
}
DEFAULT_WEATHER_TTL: float = 300.0

CALCULATION_TTLS: dict[str, float] = {
    "distance": 3600.0,
    "time": 1800.0,
    "fuel": 1800.0,
    "optimization": 3600.0,
}
DEFAULT_CALCULATION_TTL: float = 1800.0

REMOTE_TOOL_TTLS: dict[str, float] = {
    "get_current_weather": 300.0,
    "get_weather_forecast": 1800.0,
    "get_metar_data": 600.0,
    "get_taf_data": 1800.0,
    "web_search": 3600.0,
    "get_figma_data": 86400.0,
}
DEFAULT_REMOTE_TOOL_TTL: float = 600.0


def namespace_for_key(key: str) -> str:
    if not isinstance(key, str):
        # Let the general store reject it with a ValidationError.
        return GENERAL
    for prefix, namespace in KEY_PREFIXES:
        if key.startswith(prefix):
            return namespace
    return GENERAL


def weather_ttl(weather_type: str) -> float:
    return WEATHER_TTLS.get(weather_type, DEFAULT_WEATHER_TTL)


def calculation_ttl(calculation_id: str) -> float:
    """TTL by calculation kind; the id may carry a suffix (`fuel_leg2`)."""
    for kind, ttl in CALCULATION_TTLS.items():
        if calculation_id == kind or calculation_id.startswith(f"{kind}_"):
            return ttl
    return DEFAULT_CALCULATION_TTL


def remote_tool_ttl(tool_name: str) -> float:
    return REMOTE_TOOL_TTLS.get(tool_name, DEFAULT_REMOTE_TOOL_TTL)


class CachePolicyManager:
    """
    Manages the store policy of each cache namespace.

    The general namespace follows the configured store defaults; the domain
    namespaces keep their own TTL and capacity but share the configured
    cleanup interval.
    """

    def __init__(self, default_policy: CachePolicy | None = None):
        self._default_policy = default_policy or CachePolicy()
        self._policies: dict[str, CachePolicy] = {}
        self._setup_default_policies()

    def _setup_default_policies(self):
        base = self._default_policy
        self._policies[ROUTE] = self._derive(default_ttl=3600.0, max_size=100)
        self._policies[WEATHER] = self._derive(default_ttl=300.0, max_size=200)
        self._policies[CALCULATION] = self._derive(default_ttl=1800.0, max_size=500)
        self._policies[MAP] = self._derive(default_ttl=86400.0, max_size=1000)
        self._policies[REMOTE_TOOL] = self._derive(default_ttl=600.0, max_size=300)
        self._policies[GENERAL] = base

    def _derive(self, *, default_ttl: float, max_size: int) -> CachePolicy:
        return CachePolicy(
            default_ttl=default_ttl,
            max_size=max_size,
            cleanup_interval=self._default_policy.cleanup_interval,
            enable_metrics=self._default_policy.enable_metrics,
        )

    def get_policy(self, namespace: str) -> CachePolicy:
        """Policy for `namespace`, or the default policy if not registered."""
        return self._policies.get(namespace, self._default_policy)

    def register_policy(self, namespace: str, policy: CachePolicy):
        self._policies[namespace] = policy

    def update_policy(self, namespace: str, **policy_updates) -> CachePolicy:
        """
        Replace a policy with a copy carrying `policy_updates`.

        Raises:
            ValidationError: If an updated value is out of range.
        """
        current_policy = self.get_policy(namespace)
        updated_policy = CachePolicy(
            default_ttl=policy_updates.get("default_ttl", current_policy.default_ttl),
            max_size=policy_updates.get("max_size", current_policy.max_size),
            cleanup_interval=policy_updates.get("cleanup_interval", current_policy.cleanup_interval),
            enable_metrics=policy_updates.get("enable_metrics", current_policy.enable_metrics),
        )
        self._policies[namespace] = updated_policy
        return updated_policy

    def get_all_policies(self) -> dict[str, CachePolicy]:
        return self._policies.copy()
