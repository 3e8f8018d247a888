"""
Directory Sync Engine.

Keeps an external organization/user directory consistent with upstream
sources of truth:
- Pull-based full snapshots and incremental changesets from sources
- Normalized intermediate store with soft-delete tracking
- Tree-aware diff of organizations, users and memberships
- Queued, batched and realtime operation execution
- Checkpointing, crash recovery and conflict resolution
"""

__version__ = "1.0.0"
