"""
VolumeManager - named persistent storage for services.

The manager owns the volume table: a name -> VolumeRecord mapping persisted
as volumes.json under the volumes root, so records survive orchestrator
restarts. Each volume's data lives in <root>/<name>/.

Concurrency: every mutation for a given name runs under that name's lock
(the reservation table). Two concurrent attach() calls for a new name
allocate storage once; the second caller waits and receives the record the
first one created. No lock spans more than one name.

Backing storage is never deleted implicitly. Only remove() deletes it.
"""

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from corchestra.errors import VolumeError
from corchestra.schemas import VolumeRecord
from corchestra.utils import utcnow

logger = logging.getLogger(__name__)

INDEX_FILENAME = "volumes.json"


class VolumeManager:
    """
    Registry of named volumes rooted at one directory.

    Construct one per orchestrator (or per test); there is no shared
    module-level instance.
    """

    def __init__(self, root: Path | str, link_mounts: bool = True):
        """
        Initialize the manager and restore existing records.

        Args:
            root: Directory holding volume data and the index file
            link_mounts: Place a symlink at each mount path pointing at the
                volume's backing directory

        Raises:
            VolumeError: If the index exists but cannot be read
        """
        self._root = Path(root)
        self._link_mounts = link_mounts
        self._records: dict[str, VolumeRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._load_index()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def index_path(self) -> Path:
        return self._root / INDEX_FILENAME

    def get(self, name: str) -> Optional[VolumeRecord]:
        """Get a volume record by name (None if unknown)."""
        return self._records.get(name)

    def list(self) -> list[VolumeRecord]:
        """All volume records, sorted by name."""
        return [self._records[name] for name in sorted(self._records)]

    def backing_path_for(self, name: str) -> Path:
        return self._root / name

    async def attach(
        self,
        volume_name: str,
        mount_path: Optional[str] = None,
        base_dir: Optional[Path] = None,
    ) -> VolumeRecord:
        """
        Attach a volume, creating its backing storage on first use.

        Idempotent: an existing volume is returned (and mounted again);
        existing data is never touched.

        Args:
            volume_name: Volume key
            mount_path: Where the service expects the volume; relative paths
                resolve against base_dir (or the current directory)
            base_dir: The service's working directory

        Returns:
            The VolumeRecord for volume_name

        Raises:
            VolumeError: If backing storage cannot be created or the mount
                path is occupied by something else
        """
        lock = self._locks.setdefault(volume_name, asyncio.Lock())
        async with lock:
            record = self._records.get(volume_name)
            if record is None:
                backing = self.backing_path_for(volume_name)
                try:
                    await asyncio.to_thread(self._create_backing, backing)
                except OSError as e:
                    raise VolumeError(
                        f"Volume {volume_name}: cannot create backing storage at {backing}: {e}"
                    ) from e
                record = VolumeRecord(
                    name=volume_name,
                    backing_path=str(backing.resolve()),
                    created_at=utcnow(),
                )
                logger.info(f"Created volume {volume_name} at {record.backing_path}")
            elif not Path(record.backing_path).is_dir():
                # Recreating silently would hand the service an empty data directory
                raise VolumeError(
                    f"Volume {volume_name}: backing storage missing at {record.backing_path}"
                )

            if mount_path:
                await asyncio.to_thread(self._mount, record, mount_path, base_dir)
                record = record.with_mount(mount_path)

            if self._records.get(volume_name) != record:
                self._records[volume_name] = record
                self._save_index()

            return record

    async def remove(self, volume_name: str, delete_data: bool = True) -> VolumeRecord:
        """
        Remove a volume record and, by default, its backing storage.

        This is the only operation that deletes volume data; stopping or
        removing a service never calls it.

        Raises:
            VolumeError: If the volume is unknown or its data cannot be deleted
        """
        lock = self._locks.setdefault(volume_name, asyncio.Lock())
        async with lock:
            record = self._records.get(volume_name)
            if record is None:
                raise VolumeError(f"Unknown volume: {volume_name}")
            if delete_data:
                try:
                    await asyncio.to_thread(shutil.rmtree, record.backing_path, False)
                except FileNotFoundError:
                    pass
                except OSError as e:
                    raise VolumeError(f"Volume {volume_name}: cannot delete {record.backing_path}: {e}") from e
            del self._records[volume_name]
            self._save_index()
            logger.info(f"Removed volume {volume_name}")
            return record

    def _create_backing(self, backing: Path) -> None:
        backing.mkdir(parents=True, exist_ok=True)

    def _mount(self, record: VolumeRecord, mount_path: str, base_dir: Optional[Path]) -> None:
        if not self._link_mounts:
            return

        target = Path(record.backing_path)
        link = Path(mount_path)
        if not link.is_absolute():
            link = (base_dir or Path.cwd()) / link

        try:
            if link.is_symlink():
                if Path(os.readlink(link)).resolve() == target.resolve():
                    return
                raise VolumeError(
                    f"Volume {record.name}: mount path {link} already links to {os.readlink(link)}"
                )
            if link.exists():
                if link.resolve() == target.resolve():
                    return
                raise VolumeError(
                    f"Volume {record.name}: mount path {link} exists and is not this volume"
                )
            link.parent.mkdir(parents=True, exist_ok=True)
            link.symlink_to(target, target_is_directory=True)
            logger.debug(f"Mounted volume {record.name} at {link}")
        except OSError as e:
            raise VolumeError(f"Volume {record.name}: cannot mount at {link}: {e}") from e

    def _load_index(self) -> None:
        if not self.index_path.exists():
            return
        try:
            with open(self.index_path) as f:
                data = json.load(f)
            for entry in data.get("volumes", []):
                record = VolumeRecord.from_dict(entry)
                self._records[record.name] = record
        except (OSError, ValueError, KeyError) as e:
            raise VolumeError(f"Cannot read volume index {self.index_path}: {e}") from e
        logger.debug(f"Restored {len(self._records)} volumes from {self.index_path}")

    def _save_index(self) -> None:
        data = {"volumes": [record.to_dict() for record in self.list()]}
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            tmp_path = self.index_path.with_suffix(".json.tmp")
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            tmp_path.replace(self.index_path)
        except OSError as e:
            raise VolumeError(f"Cannot write volume index {self.index_path}: {e}") from e
