"""Resource pool tracking."""
from .pools import PoolSnapshot, PoolStatus, ResourcePool, ResourcePoolTracker, ResourceType

__all__ = [
    "PoolSnapshot",
    "PoolStatus",
    "ResourcePool",
    "ResourcePoolTracker",
    "ResourceType",
]
