import os
from dataclasses import dataclass
from typing import Dict, List
from urllib.parse import quote

from dotenv import load_dotenv

from pvelab.exceptions import ConfigurationError


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class OSProfile:
    """Cloud image and login defaults for one guest OS class."""

    key: str
    display_name: str
    default_user: str
    vm_url: str
    vm_file: str


class Config:
    """Loads and manages configuration from environment variables."""

    load_dotenv()

    # Proxmox connection
    PVE_HOST = os.getenv("PVE_HOST")
    PVE_NODE = os.getenv("PVE_NODE")
    API_TOKEN = os.getenv("API_TOKEN")
    PVE_VERIFY_SSL = _env_bool("PVE_VERIFY_SSL")

    # SSH access to the Proxmox host itself
    SSH_USER = os.getenv("SSH_USER", "root")
    SSH_KEY_PATH = os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa")

    # VM hardware defaults
    VM_MACHINE_TYPE = os.getenv("VM_MACHINE_TYPE", "q35,viommu=virtio")
    VM_BIOS = os.getenv("VM_BIOS", "ovmf")
    VM_CPU_TYPE = os.getenv("VM_CPU_TYPE", "host")
    VM_NETWORK_MODEL = os.getenv("VM_NETWORK_MODEL", "virtio")
    DEFAULT_BRIDGE = os.getenv("DEFAULT_BRIDGE", "vmbr0")
    VM_SCSI_CONTROLLER = os.getenv("VM_SCSI_CONTROLLER", "virtio-scsi-single")
    VM_VGA = os.getenv("VM_VGA", "std")
    VM_OSTYPE = os.getenv("VM_OSTYPE", "l26")
    VM_EFI_SIZE = os.getenv("VM_EFI_SIZE", "1M")
    VM_EFI_TYPE = os.getenv("VM_EFI_TYPE", "4m")
    VM_EFI_PRE_ENROLLED_KEYS = os.getenv("VM_EFI_PRE_ENROLLED_KEYS", "0")
    VM_AGENT_ENABLED = os.getenv("VM_AGENT_ENABLED", "1")
    VM_AGENT_FSTRIM = os.getenv("VM_AGENT_FSTRIM", "1")

    # Run defaults
    VM_NAME = os.getenv("VM_NAME", "labtomation")
    VM_CORES = int(os.getenv("VM_CORES", "2"))
    VM_MEMORY = int(os.getenv("VM_MEMORY", "8192"))
    VM_DISK_SIZE = int(os.getenv("VM_DISK_SIZE", "32"))
    DEFAULT_STORAGE = os.getenv("DEFAULT_STORAGE") or None

    # Identifiers below this are reserved by Proxmox
    VMID_FLOOR = 100

    # Timeouts (seconds)
    VM_IP_WAIT_TIMEOUT = int(os.getenv("VM_IP_WAIT_TIMEOUT", "300"))
    SSH_WAIT_TIMEOUT = int(os.getenv("SSH_WAIT_TIMEOUT", "180"))
    CLOUD_INIT_TIMEOUT = int(os.getenv("CLOUD_INIT_TIMEOUT", "600"))
    POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "5"))
    ARP_SWEEP_AFTER = float(os.getenv("ARP_SWEEP_AFTER", "35"))
    VM_STOP_WAIT = float(os.getenv("VM_STOP_WAIT", "3"))
    TASK_TIMEOUT = int(os.getenv("TASK_TIMEOUT", "300"))

    # Guest access
    GUEST_SSH_KEY = os.getenv("GUEST_SSH_KEY", "./id_rsa")

    # Local and host-side paths
    STATE_DIR = os.getenv("STATE_DIR", "./state")
    LOG_DIR = os.getenv("LOG_DIR", "./logs")
    LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "30"))
    IMAGE_CACHE_DIR = os.getenv("IMAGE_CACHE_DIR", "./images")
    HOST_IMAGE_DIR = os.getenv("HOST_IMAGE_DIR", "/var/lib/vz/template/qcow")
    PLAYBOOK_DIR = os.getenv("PLAYBOOK_DIR", "./playbooks")
    REMOTE_ROOT = os.getenv("REMOTE_ROOT", "/opt/labtomation")

    # Comma-separated DHCP lease files inspected on the host
    DHCP_LEASE_FILES = [
        path.strip()
        for path in os.getenv(
            "DHCP_LEASE_FILES",
            "/var/lib/misc/dnsmasq.leases,/var/lib/dhcp/dhcpd.leases,/var/lib/dnsmasq/dnsmasq.leases",
        ).split(",")
        if path.strip()
    ]

    SERVICE_TAGS = ["ansible", "terraform", "vault", "jenkins"]

    OS_PROFILES: Dict[str, OSProfile] = {
        "rocky10": OSProfile(
            key="rocky10",
            display_name="Rocky Linux 10",
            default_user="rocky",
            vm_url="https://dl.rockylinux.org/pub/rocky/10/images/x86_64/Rocky-10-GenericCloud-Base.latest.x86_64.qcow2",
            vm_file="Rocky-10-GenericCloud-Base.latest.x86_64.qcow2",
        ),
        "debian13": OSProfile(
            key="debian13",
            display_name="Debian 13 (Trixie)",
            default_user="debian",
            vm_url="https://cloud.debian.org/images/cloud/trixie/latest/debian-13-genericcloud-amd64.qcow2",
            vm_file="debian-13-genericcloud-amd64.qcow2",
        ),
        "ubuntu2404": OSProfile(
            key="ubuntu2404",
            display_name="Ubuntu 24.04 LTS",
            default_user="ubuntu",
            vm_url="https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img",
            vm_file="noble-server-cloudimg-amd64.img",
        ),
    }

    @classmethod
    def os_keys(cls) -> List[str]:
        """Return the supported OS classes in menu order."""
        return list(cls.OS_PROFILES)

    @classmethod
    def get_os_profile(cls, os_key: str) -> OSProfile:
        """Look up an OS class.

        Raises:
            ConfigurationError: If the key is not a supported OS class
        """
        try:
            return cls.OS_PROFILES[os_key]
        except KeyError:
            raise ConfigurationError(
                f"Invalid OS key: {os_key!r} (expected one of {', '.join(cls.OS_PROFILES)})"
            )

    @classmethod
    def machine_type_for(cls, os_key: str) -> str:
        """Debian classes get plain q35, everything else the configured type."""
        if os_key.startswith("debian"):
            return "q35"
        return cls.VM_MACHINE_TYPE

    @classmethod
    def agent_option(cls) -> str:
        return f"enabled={cls.VM_AGENT_ENABLED},fstrim_cloned_disks={cls.VM_AGENT_FSTRIM}"

    @classmethod
    def efidisk_option(cls, storage: str) -> str:
        return (
            f"{storage}:{cls.VM_EFI_SIZE},efitype={cls.VM_EFI_TYPE},"
            f"pre-enrolled-keys={cls.VM_EFI_PRE_ENROLLED_KEYS}"
        )

    @staticmethod
    def read_ssh_pubkey(path: str) -> str:
        """Load an SSH public key, URL-encoded the way the Proxmox API expects.

        Args:
            path: Path to the public key file

        Returns:
            URL-encoded SSH public key content

        Raises:
            FileNotFoundError: If the public key file does not exist
        """
        ssh_path = os.path.expanduser(path)
        try:
            with open(ssh_path) as f:
                raw_ssh = f.read().strip()
        except FileNotFoundError:
            raise FileNotFoundError(
                f"SSH public key not found at {ssh_path}. "
                f"Please set GUEST_SSH_KEY or create the key file."
            )
        return quote(raw_ssh, safe="")
