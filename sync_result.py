"""
Outcome of one sync run
"""

from typing import Dict, List

from scim_resources import ResourceType


BUCKETS = ("added", "updated", "removed", "failed", "mapped")


class SyncResult:
    """
    Accumulates per-resource outcomes of one sync invocation.

    Each bucket keeps a human-readable description per resource and kind;
    the counters mirror the buckets, with heuristic links ("mapped") also
    counted as updates.
    """

    def __init__(self):
        self.added = 0
        self.updated = 0
        self.removed = 0
        self.failed = 0
        self._entries: Dict[str, Dict[ResourceType, List[str]]] = {
            bucket: {resource_type: [] for resource_type in ResourceType} for bucket in BUCKETS
        }

    def _track(self, bucket: str, resource_type: ResourceType, info: str) -> None:
        self._entries[bucket][ResourceType(resource_type)].append(info)

    def add_added(self, resource_type: ResourceType, info: str) -> None:
        self._track("added", resource_type, info)
        self.added += 1

    def add_updated(self, resource_type: ResourceType, info: str) -> None:
        self._track("updated", resource_type, info)
        self.updated += 1

    def add_removed(self, resource_type: ResourceType, info: str) -> None:
        self._track("removed", resource_type, info)
        self.removed += 1

    def add_failed(self, resource_type: ResourceType, info: str) -> None:
        self._track("failed", resource_type, info)
        self.failed += 1

    def add_mapped(self, resource_type: ResourceType, info: str) -> None:
        self._track("mapped", resource_type, info)
        # Treat as updated
        self.updated += 1

    def entries(self, bucket: str, resource_type: ResourceType) -> List[str]:
        return list(self._entries[bucket][ResourceType(resource_type)])

    @property
    def mapped(self) -> int:
        return sum(len(infos) for infos in self._entries["mapped"].values())

    @property
    def added_users(self) -> List[str]:
        return self.entries("added", ResourceType.USER)

    @property
    def updated_users(self) -> List[str]:
        return self.entries("updated", ResourceType.USER)

    @property
    def removed_users(self) -> List[str]:
        return self.entries("removed", ResourceType.USER)

    @property
    def failed_users(self) -> List[str]:
        return self.entries("failed", ResourceType.USER)

    @property
    def mapped_users(self) -> List[str]:
        return self.entries("mapped", ResourceType.USER)

    @property
    def added_groups(self) -> List[str]:
        return self.entries("added", ResourceType.GROUP)

    @property
    def updated_groups(self) -> List[str]:
        return self.entries("updated", ResourceType.GROUP)

    @property
    def removed_groups(self) -> List[str]:
        return self.entries("removed", ResourceType.GROUP)

    @property
    def failed_groups(self) -> List[str]:
        return self.entries("failed", ResourceType.GROUP)

    @property
    def mapped_groups(self) -> List[str]:
        return self.entries("mapped", ResourceType.GROUP)

    @property
    def status(self) -> str:
        parts = []
        for label, count in (("added", self.added), ("updated", self.updated),
                             ("removed", self.removed), ("failed", self.failed),
                             ("mapped", self.mapped)):
            if count > 0:
                parts.append(f"{count} {label}")
        return ", ".join(parts) if parts else "No changes"

    def to_dict(self) -> dict:
        """Counters and per-resource descriptions, for reporting."""
        return {
            "status": self.status,
            "counts": {
                "added": self.added,
                "updated": self.updated,
                "removed": self.removed,
                "failed": self.failed,
                "mapped": self.mapped,
            },
            "users": {bucket: self.entries(bucket, ResourceType.USER) for bucket in BUCKETS},
            "groups": {bucket: self.entries(bucket, ResourceType.GROUP) for bucket in BUCKETS},
        }

    def __str__(self) -> str:
        return self.status
