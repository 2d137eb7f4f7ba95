"""Value types shared by the inspector, reconciler and lifecycle controller."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Union

TAG_DELIMITER = ";"


class TagSet:
    """Ordered, duplicate-free set of VM tags."""

    def __init__(self, tags: Iterable[str] = ()):
        self._tags: List[str] = []
        for tag in tags:
            self.add(tag)

    @classmethod
    def parse(cls, raw: Optional[str]) -> "TagSet":
        """Parse a Proxmox tags value. Proxmox accepts ';', ',' and spaces as separators."""
        if not raw:
            return cls()
        normalized = raw.replace(",", TAG_DELIMITER).replace(" ", TAG_DELIMITER)
        return cls(normalized.split(TAG_DELIMITER))

    def add(self, tag: str) -> bool:
        """Add a tag. Returns False when it was already present."""
        tag = tag.strip()
        if not tag or tag in self._tags:
            return False
        self._tags.append(tag)
        return True

    def render(self) -> str:
        return TAG_DELIMITER.join(self._tags)

    def __contains__(self, tag: object) -> bool:
        return tag in self._tags

    def __iter__(self) -> Iterator[str]:
        return iter(self._tags)

    def __len__(self) -> int:
        return len(self._tags)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TagSet):
            return NotImplemented
        return self._tags == other._tags

    def __repr__(self) -> str:
        return f"TagSet({self._tags!r})"


@dataclass(frozen=True)
class DesiredConfig:
    """What the caller wants the VM to look like."""

    name: str
    cores: int
    memory_mb: int
    disk_gb: int
    storage: str
    os_key: str
    force_recreate: bool = False


@dataclass(frozen=True)
class ResourceState:
    """Facets of a VM parsed from its live configuration."""

    vmid: int
    name: str = ""
    has_firmware_store: bool = False
    has_primary_disk: bool = False
    has_init_drive: bool = False
    has_boot_order: bool = False
    has_guest_agent: bool = False
    disk_size_gb: Optional[int] = None
    ci_user: Optional[str] = None
    has_dhcp: bool = False
    has_ssh_keys: bool = False
    mac_address: Optional[str] = None
    bridge: Optional[str] = None
    tags: TagSet = field(default_factory=TagSet)

    @property
    def is_complete(self) -> bool:
        return (
            self.has_firmware_store
            and self.has_primary_disk
            and self.has_init_drive
            and self.has_boot_order
            and self.has_guest_agent
        )

    def identity_configured(self, login_user: str) -> bool:
        """Cloud-init login user, SSH key and DHCP networking are all in place."""
        return self.ci_user == login_user and self.has_ssh_keys and self.has_dhcp


@dataclass(frozen=True)
class AdvisoryMismatch:
    """Observed value differs from the desired one, but is never changed automatically."""

    vmid: int
    field: str
    current: str
    desired: str
    hint: str = ""


# Reconciliation actions. Each one is applied only when its gating facet is false.


@dataclass(frozen=True)
class AttachFirmwareStore:
    storage: str


@dataclass(frozen=True)
class ImportAndResizeDisk:
    source_image: str
    storage: str
    target_size_gb: int


@dataclass(frozen=True)
class AttachInitDrive:
    storage: str


@dataclass(frozen=True)
class SetBootOrder:
    disk: str = "scsi0"


@dataclass(frozen=True)
class EnableGuestAgent:
    option: str


@dataclass(frozen=True)
class SetIdentity:
    # None keeps the current login user
    user: Optional[str]
    ssh_key_path: str


@dataclass(frozen=True)
class SetNetworkMode:
    mode: str = "dhcp"


ReconciliationAction = Union[
    AttachFirmwareStore,
    ImportAndResizeDisk,
    AttachInitDrive,
    SetBootOrder,
    EnableGuestAgent,
    SetIdentity,
    SetNetworkMode,
]


@dataclass
class StepResult:
    """What a reconciliation step did."""

    step: str
    vmid: int
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    advisories: List[AdvisoryMismatch] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.applied)


class LifecycleState(str, Enum):
    ABSENT = "absent"
    EXISTS_INCOMPLETE = "exists-incomplete"
    EXISTS_COMPLETE = "exists-complete"
    DESTROYING = "destroying"
    PROVISIONING = "provisioning"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ProvisionContext:
    """Inputs threaded through every reconciliation step of one run."""

    vmid: int
    desired: DesiredConfig
    login_user: str
    ssh_public_key_path: str
    image_path: str
    numa: bool = False


@dataclass
class ProvisionResult:
    vmid: int
    state: LifecycleState
    transitions: List[LifecycleState] = field(default_factory=list)
    ip_address: Optional[str] = None
    created: bool = False
    advisories: List[AdvisoryMismatch] = field(default_factory=list)


class WaitOutcome(Enum):
    READY = "ready"
    TIMEOUT = "timeout"


TIMEOUT = WaitOutcome.TIMEOUT
