"""
Lifecycle controller: decides create, reuse or recreate for a VM, runs the
reconciliation steps in order and waits for the VM to become reachable.

States::

    Absent ──────────────┐
    ExistsIncomplete ────┼──> Provisioning ──> Ready
    ExistsComplete ──force──> Destroying ──┘        └──> Failed
    ExistsComplete ──────────────────────────────────> Ready (no side effects)
"""

import logging
import re
import time
from typing import Any, Callable, List, Optional

from pvelab.config import Config
from pvelab.exceptions import HostCallFailure, PvelabError, ReadinessTimeout, RemoteUnreachable
from pvelab.images import ImageManager
from pvelab.inspector import ResourceInspector
from pvelab.models import (
    TIMEOUT,
    DesiredConfig,
    LifecycleState,
    ProvisionContext,
    ProvisionResult,
    ResourceState,
)
from pvelab.readiness import ReadinessWaiter
from pvelab.reconciler import Reconciler
from pvelab.remote import RemoteShell, SSHCredentials
from pvelab.tags import TagLedger

logger = logging.getLogger(__name__)

NUMA_NODES_RE = re.compile(r"available:\s*(\d+)\s+nodes?")


def generate_identifier(client: Any, floor: Optional[int] = None) -> int:
    """Next free VM identifier: one above the highest allocated, never below the floor."""
    floor = Config.VMID_FLOOR if floor is None else floor
    used = client.list_allocated_identifiers()
    return max(floor, max(used, default=floor - 1) + 1)


def validate_identifier(client: Any, vmid: int) -> bool:
    """True if ``vmid`` is free. Purely informational; reuse of a taken id is allowed."""
    if vmid in client.list_allocated_identifiers():
        logger.info(f"ℹ️  VMID {vmid} already in use, the run will reuse it idempotently")
        return False
    return True


def detect_numa(host_shell: RemoteShell) -> bool:
    """True when the host has more than one NUMA node."""
    try:
        result = host_shell.run(["numactl", "--hardware"])
    except RemoteUnreachable as e:
        logger.warning(f"⚠️  Could not detect NUMA topology: {e}")
        return False
    if not result.ok:
        logger.info("ℹ️  numactl not available on host, NUMA disabled")
        return False
    match = NUMA_NODES_RE.search(result.stdout)
    nodes = int(match.group(1)) if match else 1
    logger.info(f"ℹ️  Host has {nodes} NUMA node(s)")
    return nodes > 1


class LifecycleController:
    """Top-level driver of a provisioning run."""

    def __init__(
        self,
        client: Any,
        reconciler: Reconciler,
        waiter: ReadinessWaiter,
        inspector: Optional[ResourceInspector] = None,
        images: Optional[ImageManager] = None,
        ssh_key_path: Optional[str] = None,
        numa_detector: Optional[Callable[[], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.reconciler = reconciler
        self.waiter = waiter
        self.inspector = inspector or reconciler.inspector
        self.images = images
        self.ssh_key_path = ssh_key_path or Config.GUEST_SSH_KEY
        self.numa_detector = numa_detector
        self.sleep = sleep
        self.state: Optional[LifecycleState] = None
        self.transitions: List[LifecycleState] = []
        self.vmid: Optional[int] = None

    @classmethod
    def for_client(cls, client: Any, ssh_key_path: Optional[str] = None) -> "LifecycleController":
        """Wire the default collaborators around one ProxmoxClient."""
        inspector = ResourceInspector(client)
        reconciler = Reconciler(client, inspector, TagLedger(client))
        waiter = ReadinessWaiter(client, client.shell, inspector)
        return cls(
            client,
            reconciler,
            waiter,
            inspector=inspector,
            images=ImageManager(client.shell),
            ssh_key_path=ssh_key_path,
            numa_detector=lambda: detect_numa(client.shell),
        )

    def guest_credentials(self, user: str) -> SSHCredentials:
        return SSHCredentials(host="", user=user, key_path=self.ssh_key_path)

    def _enter(self, state: LifecycleState) -> None:
        if self.state is not None:
            logger.debug(f"Lifecycle: {self.state.value} → {state.value}")
        self.state = state
        self.transitions.append(state)

    def provision(
        self,
        desired: DesiredConfig,
        force_recreate: Optional[bool] = None,
        vmid: Optional[int] = None,
    ) -> ProvisionResult:
        """Bring a VM to the Ready state.

        Args:
            desired: Target configuration
            force_recreate: Destroy a complete VM first; defaults to ``desired.force_recreate``
            vmid: Identifier to use; generated when omitted

        Returns:
            ProvisionResult in state READY. A complete VM reused without
            changes has no IP address in the result.

        Raises:
            HostCallFailure: A host call failed; the partial VM is left in place
            ReadinessTimeout: The VM never got an address or never answered SSH
        """
        force = desired.force_recreate if force_recreate is None else force_recreate
        profile = Config.get_os_profile(desired.os_key)
        self.state = None
        self.transitions = []
        self.vmid = vmid

        try:
            if vmid is None:
                vmid = generate_identifier(self.client)
                logger.info(f"🆕 Auto-generated VMID: {vmid}")
            else:
                validate_identifier(self.client, vmid)
            self.vmid = vmid

            state = self.inspector.find(vmid)
            if state is None:
                self._enter(LifecycleState.ABSENT)
            elif state.is_complete and state.identity_configured(profile.default_user):
                self._enter(LifecycleState.EXISTS_COMPLETE)
                if not force:
                    logger.info(f"✅ VM {vmid} is already fully configured, nothing to do")
                    self._enter(LifecycleState.READY)
                    return ProvisionResult(vmid, LifecycleState.READY, list(self.transitions))
                self._destroy(vmid)
                state = None
            else:
                self._enter(LifecycleState.EXISTS_INCOMPLETE)
                if force:
                    logger.warning(f"⚠️  VM {vmid} is incomplete, resuming it instead of recreating")
                logger.info(f"🔧 Resuming configuration of VM {vmid}")

            self._enter(LifecycleState.PROVISIONING)
            ctx = ProvisionContext(
                vmid=vmid,
                desired=desired,
                login_user=profile.default_user,
                ssh_public_key_path=f"{self.ssh_key_path}.pub",
                image_path=self._image_path(profile, state),
                numa=self.numa_detector() if self.numa_detector else False,
            )

            advisories = []
            for step in (
                self.reconciler.ensure_identity_and_firmware,
                self.reconciler.ensure_disk,
                self.reconciler.ensure_boot_and_agent,
                self.reconciler.ensure_identity_config,
            ):
                result = step(ctx)
                advisories.extend(result.advisories)

            address = self.reach(vmid, profile.default_user)
        except PvelabError as e:
            self._enter(LifecycleState.FAILED)
            logger.error(f"❌ Provisioning of VM {vmid} failed at {getattr(e, 'step', 'unknown step')}: {e}")
            raise

        self._enter(LifecycleState.READY)
        return ProvisionResult(
            vmid,
            LifecycleState.READY,
            list(self.transitions),
            ip_address=address,
            created=LifecycleState.ABSENT in self.transitions or LifecycleState.DESTROYING in self.transitions,
            advisories=advisories,
        )

    def _image_path(self, profile: Any, state: Optional[ResourceState]) -> str:
        """Host path of the cloud image; only fetched when a disk still has to be imported."""
        if self.images is None:
            return f"{Config.HOST_IMAGE_DIR}/{profile.vm_file}"
        if state is not None and state.has_primary_disk:
            return self.images.host_path(profile)
        return self.images.ensure_image(profile)

    def _destroy(self, vmid: int) -> None:
        self._enter(LifecycleState.DESTROYING)
        logger.warning(f"🗑️  Force recreate: destroying VM {vmid}")
        if self.client.get_status(vmid) == "running":
            try:
                self.client.stop(vmid)
            except HostCallFailure as e:
                logger.warning(f"⚠️  Stopping VM {vmid} failed, destroying anyway: {e}")
            self.sleep(Config.VM_STOP_WAIT)
        self.client.destroy(vmid)

    def reach(self, vmid: int, user: str) -> str:
        """Start the VM if needed and wait until it has an address and answers SSH.

        Raises:
            ReadinessTimeout: If either wait times out
        """
        if self.client.get_status(vmid) != "running":
            self.client.start(vmid)
        else:
            logger.info(f"ℹ️  VM {vmid} already running")

        address = self.waiter.await_network(vmid, Config.VM_IP_WAIT_TIMEOUT)
        if address is TIMEOUT:
            raise ReadinessTimeout("network", vmid, Config.VM_IP_WAIT_TIMEOUT)

        credentials = self.guest_credentials(user)
        if self.waiter.await_shell(str(address), credentials, Config.SSH_WAIT_TIMEOUT) is TIMEOUT:
            raise ReadinessTimeout("shell", vmid, Config.SSH_WAIT_TIMEOUT)
        return str(address)
