"""Core package initialization.

The EFB cache subsystem: entry stores, adaptive TTL, eviction, dependency
graph, predictive prefetcher, metrics and the domain facade. Import the
submodules directly (`from core.efb_cache import create_efb_cache`).
"""
