"""
Utility functions shared across scvignettes.
"""

from .cache import cached_computation, clear_cache, get_cache_stats

__all__ = ["cached_computation", "clear_cache", "get_cache_stats"]
