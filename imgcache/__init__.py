"""
imgcache - Resilient Image Cache
Bucketed image caching tuned for slow, lossy networks

Author: imgcache
Version: 1.0.0
"""

from imgcache.caching.bucket_policy import Bucket
from imgcache.caching.registry import CacheRegistry, get_cache_registry
from imgcache.config.config_loader import ConfigLoader

__version__ = "1.0.0"
__all__ = ["Bucket", "CacheRegistry", "get_cache_registry", "ConfigLoader"]
