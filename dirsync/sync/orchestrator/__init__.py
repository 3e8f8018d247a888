"""
Sync Orchestrator Module.

Event publication for the task lifecycle. The task manager lives in
dirsync.sync.orchestrator.task_manager.
"""

from dirsync.sync.orchestrator.event_manager import (
    Event,
    EventManager,
    EventPriority,
    EventStore,
    EventType,
    Subscription,
)

__all__ = [
    "Event",
    "EventManager",
    "EventPriority",
    "EventStore",
    "EventType",
    "Subscription",
]
