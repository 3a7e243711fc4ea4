"""Shared work queue with exactly-once claims."""
from .work_queue import PriorityTier, QueueItem, QueueStatus, WorkQueue

__all__ = ["PriorityTier", "QueueItem", "QueueStatus", "WorkQueue"]
