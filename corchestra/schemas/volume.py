"""VolumeRecord schema - a named persistent storage unit."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class VolumeRecord:
    """
    A named volume and where its data lives.

    Attributes:
        name: Unique volume key
        backing_path: Resolved storage directory (created on first use,
            never deleted implicitly)
        created_at: When the backing storage was first allocated
        mount_paths: Every mount path the volume has been attached at
    """
    name: str
    backing_path: str
    created_at: datetime
    mount_paths: tuple[str, ...] = field(default_factory=tuple)

    def with_mount(self, mount_path: str) -> "VolumeRecord":
        """Return a copy that also lists mount_path (no-op if already listed)."""
        if mount_path in self.mount_paths:
            return self
        return VolumeRecord(
            name=self.name,
            backing_path=self.backing_path,
            created_at=self.created_at,
            mount_paths=self.mount_paths + (mount_path,),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "backing_path": self.backing_path,
            "created_at": self.created_at.isoformat(),
            "mount_paths": list(self.mount_paths),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VolumeRecord":
        return cls(
            name=data["name"],
            backing_path=data["backing_path"],
            created_at=datetime.fromisoformat(data["created_at"]),
            mount_paths=tuple(data.get("mount_paths", ())),
        )
