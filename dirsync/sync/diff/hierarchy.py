"""
Organization hierarchy helpers.
"""

from collections import deque
from typing import Dict, List, Optional

from dirsync.sync.entities import Organization
from dirsync.sync.errors import CyclicHierarchy


def compute_depths(organizations: Dict[str, Organization], side: str = "local") -> Dict[str, int]:
    """
    Breadth-first depth of every organization.

    Organizations whose parent is not in the set count as roots.

    Args:
        organizations: Active organizations keyed by id
        side: Label used in the error context

    Returns:
        Dictionary of organization id to depth (roots are 0)

    Raises:
        CyclicHierarchy: If some organizations are unreachable from any root
    """
    children: Dict[Optional[str], List[str]] = {}
    roots: List[str] = []
    for org_id in sorted(organizations):
        parent_id = organizations[org_id].parent_id
        if parent_id is None or parent_id not in organizations:
            roots.append(org_id)
        else:
            children.setdefault(parent_id, []).append(org_id)

    depths: Dict[str, int] = {}
    queue = deque((org_id, 0) for org_id in roots)
    while queue:
        org_id, depth = queue.popleft()
        depths[org_id] = depth
        for child_id in children.get(org_id, []):
            queue.append((child_id, depth + 1))

    if len(depths) != len(organizations):
        cyclic = sorted(set(organizations) - set(depths))
        raise CyclicHierarchy(
            f"Cycle in {side} organization hierarchy involving {len(cyclic)} organizations",
            context={"side": side, "entity_ids": cyclic[:50]}
        )
    return depths
