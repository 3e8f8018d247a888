"""
Data Transformer Module.

Maps raw source and target records onto normalized entities.
"""

from dirsync.sync.transformer.mapper import EntityMapper, EntityMapping

__all__ = ["EntityMapper", "EntityMapping"]
