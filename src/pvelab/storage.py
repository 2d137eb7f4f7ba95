"""
Storage pool selection for VM disks.

Picks the configured default when it is usable, otherwise prefers a ZFS
pool, then the usual Proxmox pool names, then whatever is left.
"""

import logging
from typing import Any, Dict, List, Optional

from pvelab.config import Config
from pvelab.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

PRIORITY = ("local-zfs", "local-lvm", "local")
LOW_SPACE_BYTES = 5 * 1024**3


class StorageSelector:
    """Chooses the storage pool that receives VM disks."""

    def __init__(self, proxmox_client: Any, default_storage: Optional[str] = None):
        """
        Initialize storage selector.

        Args:
            proxmox_client: ProxmoxClient instance
            default_storage: Preferred pool; falls back to DEFAULT_STORAGE
        """
        self.client = proxmox_client
        self.default_storage = default_storage or Config.DEFAULT_STORAGE

    def available(self, content_type: str = "images") -> List[Dict[str, Any]]:
        """Active, enabled pools that accept the given content type."""
        pools = self.client.list_storage_pools(content_type)
        return [
            p
            for p in pools
            if p.get("active", 1) and p.get("enabled", 1) and "storage" in p
        ]

    def validate(self, storage_id: str, content_type: str = "images") -> bool:
        return any(p["storage"] == storage_id for p in self.available(content_type))

    def select(self, content_type: str = "images") -> str:
        """
        Pick a storage pool for VM disks.

        Returns:
            Storage pool id

        Raises:
            ConfigurationError: If no pool accepts the content type
        """
        pools = self.available(content_type)
        if not pools:
            raise ConfigurationError(f"No storage pool on {self.client.node} accepts '{content_type}'")
        by_id = {p["storage"]: p for p in pools}

        chosen: Optional[Dict[str, Any]] = None
        if self.default_storage:
            if self.default_storage in by_id:
                chosen = by_id[self.default_storage]
            else:
                logger.warning(f"⚠️  Configured storage '{self.default_storage}' not usable, auto-detecting")

        if chosen is None:
            chosen = next((p for p in pools if p.get("type") == "zfspool"), None)
        if chosen is None:
            chosen = next((by_id[name] for name in PRIORITY if name in by_id), None)
        if chosen is None:
            chosen = pools[0]

        storage = chosen["storage"]
        avail = chosen.get("avail")
        if avail is not None and int(avail) < LOW_SPACE_BYTES:
            logger.warning(f"⚠️  Storage '{storage}' has only {int(avail) // 1024**3}GB free")
        logger.info(f"✅ Using storage: {storage} ({chosen.get('type', 'unknown')})")
        return storage  # type: ignore[no-any-return]
