"""Idempotent reconciliation steps.

Each ``ensure_*`` step re-inspects the VM, derives the actions whose gating
facet is still false, and applies only those. Steps must run in this order:
identity and firmware, disk, boot and agent, identity config.
"""

import logging
from typing import Any, Optional

from pvelab.config import Config
from pvelab.inspector import DISK_KEY, ResourceInspector
from pvelab.models import (
    AdvisoryMismatch,
    AttachFirmwareStore,
    AttachInitDrive,
    EnableGuestAgent,
    ImportAndResizeDisk,
    ProvisionContext,
    ReconciliationAction,
    SetBootOrder,
    SetIdentity,
    SetNetworkMode,
    StepResult,
)
from pvelab.tags import TagLedger

logger = logging.getLogger(__name__)


class Reconciler:
    """Drives a VM towards its desired configuration one facet at a time."""

    def __init__(
        self,
        client: Any,
        inspector: Optional[ResourceInspector] = None,
        tags: Optional[TagLedger] = None,
    ) -> None:
        self.client = client
        self.inspector = inspector or ResourceInspector(client)
        self.tags = tags or TagLedger(client)

    def ensure_identity_and_firmware(self, ctx: ProvisionContext) -> StepResult:
        """Create the VM if absent, then make sure it has an EFI vars disk."""
        vmid, desired = ctx.vmid, ctx.desired
        result = StepResult("identity and firmware", vmid)
        state = self.inspector.find(vmid)

        if state is None:
            params = {
                "name": desired.name,
                "machine": Config.machine_type_for(desired.os_key),
                "bios": Config.VM_BIOS,
                "cpu": Config.VM_CPU_TYPE,
                "cores": desired.cores,
                "memory": desired.memory_mb,
                "numa": 1 if ctx.numa else 0,
                "net0": f"{Config.VM_NETWORK_MODEL},bridge={Config.DEFAULT_BRIDGE}",
                "scsihw": Config.VM_SCSI_CONTROLLER,
                "vga": Config.VM_VGA,
                "ostype": Config.VM_OSTYPE,
            }
            self.client.create(vmid, **params)
            result.applied.append("create")
            self._apply(vmid, AttachFirmwareStore(desired.storage), result)
            self.tags.set_all(vmid, [desired.os_key])
            logger.info(f"✅ VM {vmid} created")
            return result

        logger.info(f"ℹ️  VM {vmid} already exists ({state.name}), skipping creation")
        result.skipped.append("create")
        if state.has_firmware_store:
            result.skipped.append("firmware store")
        else:
            self._apply(vmid, AttachFirmwareStore(desired.storage), result)
        if desired.os_key not in state.tags:
            self.tags.add_one(vmid, desired.os_key)
        return result

    def ensure_disk(self, ctx: ProvisionContext) -> StepResult:
        """Import the cloud image as the primary disk unless one is attached.

        An attached disk is never resized, shrunk or replaced: a size
        mismatch is only reported as an advisory.
        """
        vmid, desired = ctx.vmid, ctx.desired
        result = StepResult("disk", vmid)
        state = self.inspector.inspect(vmid)

        if state.has_primary_disk:
            result.skipped.append("primary disk")
            logger.info(f"ℹ️  VM {vmid} already has {DISK_KEY}, skipping import")
            if state.disk_size_gb is not None and state.disk_size_gb != desired.disk_gb:
                advisory = AdvisoryMismatch(
                    vmid=vmid,
                    field="disk size",
                    current=f"{state.disk_size_gb}G",
                    desired=f"{desired.disk_gb}G",
                    hint=f"qm resize {vmid} {DISK_KEY} {desired.disk_gb}G",
                )
                result.advisories.append(advisory)
                logger.warning(
                    f"⚠️  VM {vmid} disk is {advisory.current}, wanted {advisory.desired}. "
                    f"Resize manually if needed: {advisory.hint}"
                )
            return result

        self._apply(vmid, ImportAndResizeDisk(ctx.image_path, desired.storage, desired.disk_gb), result)
        return result

    def ensure_boot_and_agent(self, ctx: ProvisionContext) -> StepResult:
        vmid = ctx.vmid
        result = StepResult("boot and agent", vmid)
        state = self.inspector.inspect(vmid)

        checks = [
            (state.has_init_drive, "init drive", AttachInitDrive(ctx.desired.storage)),
            (state.has_boot_order, "boot order", SetBootOrder(DISK_KEY)),
            (state.has_guest_agent, "guest agent", EnableGuestAgent(Config.agent_option())),
        ]
        for present, facet, action in checks:
            if present:
                result.skipped.append(facet)
            else:
                self._apply(vmid, action, result)
        return result

    def ensure_identity_config(self, ctx: ProvisionContext) -> StepResult:
        """Set cloud-init user, SSH key, DHCP networking and upgrade-on-boot.

        Login user drift is corrected. The SSH key and upgrade flag are
        always re-applied. DHCP is only set when not configured yet.
        """
        vmid = ctx.vmid
        result = StepResult("identity config", vmid)
        state = self.inspector.inspect(vmid)

        if state.ci_user and state.ci_user != ctx.login_user:
            logger.warning(f"⚠️  VM {vmid} cloud-init user is '{state.ci_user}', correcting to '{ctx.login_user}'")
        user = None if state.ci_user == ctx.login_user else ctx.login_user
        self._apply(vmid, SetIdentity(user, ctx.ssh_public_key_path), result)

        if state.has_dhcp:
            result.skipped.append("dhcp")
        else:
            self._apply(vmid, SetNetworkMode("dhcp"), result)

        self.client.configure(vmid, ciupgrade=1)
        result.applied.append("upgrade on boot")
        return result

    def _apply(self, vmid: int, action: ReconciliationAction, result: StepResult) -> None:
        """Translate one action into host calls."""
        if isinstance(action, AttachFirmwareStore):
            self.client.configure(vmid, efidisk0=Config.efidisk_option(action.storage))
            result.applied.append("firmware store")
        elif isinstance(action, ImportAndResizeDisk):
            volume = self.client.import_disk(vmid, action.source_image, action.storage)
            self.client.configure(vmid, **{DISK_KEY: f"{volume},iothread=1,ssd=1,discard=on"})
            self.client.resize_disk(vmid, DISK_KEY, action.target_size_gb)
            result.applied.append("primary disk")
        elif isinstance(action, AttachInitDrive):
            self.client.configure(vmid, ide2=f"{action.storage}:cloudinit")
            result.applied.append("init drive")
        elif isinstance(action, SetBootOrder):
            self.client.configure(vmid, boot=f"order={action.disk}", bootdisk=action.disk)
            self.client.configure(vmid, serial0="socket", vga="serial0")
            result.applied.append("boot order")
        elif isinstance(action, EnableGuestAgent):
            self.client.configure(vmid, agent=action.option)
            result.applied.append("guest agent")
        elif isinstance(action, SetIdentity):
            if action.user is not None:
                self.client.configure(vmid, ciuser=action.user)
                result.applied.append("login user")
            else:
                result.skipped.append("login user")
            self.client.configure(vmid, sshkeys=Config.read_ssh_pubkey(action.ssh_key_path))
            result.applied.append("ssh key")
        elif isinstance(action, SetNetworkMode):
            self.client.configure(vmid, ipconfig0=f"ip={action.mode}")
            result.applied.append("dhcp")
        else:
            raise TypeError(f"Unknown reconciliation action: {action!r}")
        logger.info(f"🔧 VM {vmid}: applied {type(action).__name__}")
