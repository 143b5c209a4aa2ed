"""Domain modules for sync business rules.

This package centralizes the pure merge logic of the sync system:
- merge: three-way merge of entities, preferences and whole packages

Architecture:
    domain/ contains pure business logic without external dependencies.
    Store writes and transport calls stay in the applier, the resolver
    and the engine.
"""

from profilesync.sync.domain.merge import MergeEngine, resolve_preferences

__all__ = [
    "MergeEngine",
    "resolve_preferences",
]
