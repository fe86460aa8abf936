"""
Core sync services: keys, cache, coalescing, progressive loading, merging
and viewport windowing.
"""

from mapsync.services.cache import CacheStore, LocalCache, RedisCache
from mapsync.services.coalesce import CancelToken, RequestCoalescer
from mapsync.services.fingerprint import Fingerprinter, fingerprint
from mapsync.services.merge import MergedDataset, ResultMerger
from mapsync.services.progressive import LoadOutcome, ProgressiveLoader
from mapsync.services.queries import ProjectQueryService
from mapsync.services.scheduler import AsyncioIdleScheduler, IdleScheduler, ImmediateScheduler
from mapsync.services.session import MapSession
from mapsync.services.viewport import Bounds, ViewportState, Windower, ZoomCaps

__all__ = [
    "AsyncioIdleScheduler",
    "Bounds",
    "CacheStore",
    "CancelToken",
    "Fingerprinter",
    "IdleScheduler",
    "ImmediateScheduler",
    "LoadOutcome",
    "LocalCache",
    "MapSession",
    "MergedDataset",
    "ProgressiveLoader",
    "ProjectQueryService",
    "RedisCache",
    "RequestCoalescer",
    "ResultMerger",
    "ViewportState",
    "Windower",
    "ZoomCaps",
    "fingerprint",
]
