"""
Conflict Resolution Module.
"""

from dirsync.sync.conflict.resolver import ConflictDecision, ConflictResolver, conflict_id

__all__ = ["ConflictDecision", "ConflictResolver", "conflict_id"]
