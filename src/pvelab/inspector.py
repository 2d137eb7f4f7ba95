"""Resource inspection: turn a VM's live configuration into ResourceState facets.

All configuration text matching lives here so callers only deal with booleans.
"""

import logging
import re
from typing import Any, Dict, Optional

from pvelab.exceptions import NotFound
from pvelab.models import ResourceState, TagSet

logger = logging.getLogger(__name__)

FIRMWARE_KEY = "efidisk0"
DISK_KEY = "scsi0"
INIT_DRIVE_KEY = "ide2"
NET_KEY = "net0"

MAC_RE = re.compile(r"=((?:[0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2})")
BRIDGE_RE = re.compile(r"bridge=([^,\s]+)")
SIZE_RE = re.compile(r"size=(\d+(?:\.\d+)?)([KMGT])?")
BOOT_ORDER_RE = re.compile(rf"order={DISK_KEY}\b")

_SIZE_TO_GB = {"K": 1 / (1024 * 1024), "M": 1 / 1024, "G": 1, "T": 1024}


def _agent_enabled(value: str) -> bool:
    """Agent option is either a bare flag (``1``) or ``enabled=1,...``."""
    for part in value.split(","):
        key, sep, val = part.partition("=")
        if not sep and key.strip() == "1":
            return True
        if key.strip() == "enabled" and val.strip() == "1":
            return True
    return False


def _disk_size_gb(value: str) -> Optional[int]:
    match = SIZE_RE.search(value)
    if not match:
        return None
    return int(round(float(match.group(1)) * _SIZE_TO_GB[match.group(2) or "G"]))


def parse_resource_state(vmid: int, config: Dict[str, Any]) -> ResourceState:
    """Build the facet view of a VM from its configuration mapping."""

    def text(key: str) -> str:
        return str(config.get(key) or "")

    disk = text(DISK_KEY)
    net = text(NET_KEY)
    mac = MAC_RE.search(net)
    bridge = BRIDGE_RE.search(net)

    return ResourceState(
        vmid=vmid,
        name=text("name"),
        has_firmware_store=bool(text(FIRMWARE_KEY)),
        has_primary_disk=bool(disk),
        has_init_drive="cloudinit" in text(INIT_DRIVE_KEY),
        has_boot_order=bool(BOOT_ORDER_RE.search(text("boot"))),
        has_guest_agent=_agent_enabled(text("agent")),
        disk_size_gb=_disk_size_gb(disk) if disk else None,
        ci_user=text("ciuser") or None,
        has_dhcp="ip=dhcp" in text("ipconfig0"),
        has_ssh_keys=bool(text("sshkeys").strip()),
        mac_address=mac.group(1).upper() if mac else None,
        bridge=bridge.group(1) if bridge else None,
        tags=TagSet.parse(config.get("tags")),
    )


class ResourceInspector:
    """Reads VM state without ever mutating it."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def inspect(self, vmid: int) -> ResourceState:
        """Inspect a VM.

        Raises:
            NotFound: If no VM exists with this identifier
            HostCallFailure: If the host could not be queried
        """
        state = parse_resource_state(vmid, self.client.get_config(vmid))
        logger.debug(
            f"VM {vmid} facets: firmware={state.has_firmware_store} disk={state.has_primary_disk} "
            f"init={state.has_init_drive} boot={state.has_boot_order} agent={state.has_guest_agent}"
        )
        return state

    def find(self, vmid: int) -> Optional[ResourceState]:
        """Like inspect, but returns None for a missing VM."""
        try:
            return self.inspect(vmid)
        except NotFound:
            return None
