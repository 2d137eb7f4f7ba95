#!/usr/bin/env python3
"""
pvelab - idempotent lab VM provisioning on Proxmox VE.

    pvelab provision --os ubuntu2404   # create or resume a lab VM and bootstrap it
    pvelab inspect 105                 # show configuration facets of a VM
    pvelab tag 105 ansible             # add a tag to a VM
    pvelab next-vmid                   # print the next free VM identifier

Re-running the same command is the recovery path after a failure.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from pvelab.bootstrap import GuestBootstrapper
from pvelab.config import Config
from pvelab.exceptions import LockHeldError, PvelabError
from pvelab.inspector import ResourceInspector
from pvelab.lifecycle import LifecycleController, generate_identifier
from pvelab.models import DesiredConfig, ProvisionResult
from pvelab.proxmox_api import ProxmoxClient
from pvelab.remote import RemoteShell, ensure_keypair
from pvelab.state import ProcessLock, StateFile, cleanup_old_logs
from pvelab.storage import StorageSelector
from pvelab.tags import TagLedger

# Initialize CLI app and console
app = typer.Typer(
    name="pvelab",
    help="Idempotent lab VM provisioning for Proxmox VE",
    add_completion=False
)
console = Console()

LOG_FORMAT = "%(asctime)s [%(levelname)8s] %(name)s: %(message)s"

# Configure logging
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger(__name__)


def get_client() -> ProxmoxClient:
    """Connect to the Proxmox host named by PVE_HOST."""
    try:
        return ProxmoxClient()
    except PvelabError as e:
        console.print(f"❌ Could not connect to Proxmox: {e}")
        raise typer.Exit(1)


def attach_run_log() -> Path:
    """Mirror log output into a timestamped file under LOG_DIR."""
    log_dir = Path(Config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    cleanup_old_logs(str(log_dir), Config.LOG_RETENTION_DAYS)
    log_file = log_dir / f"pvelab_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
    return log_file


def choose_os() -> str:
    """Interactive OS menu; the first entry is the default."""
    keys = Config.os_keys()
    table = Table(title="Available operating systems")
    table.add_column("#", style="cyan")
    table.add_column("Key", style="green")
    table.add_column("Name")
    for index, key in enumerate(keys, start=1):
        table.add_row(str(index), key, Config.get_os_profile(key).display_name)
    console.print(table)

    choice = typer.prompt("Select OS", default="1")
    if choice in keys:
        return choice
    if choice.isdigit() and 1 <= int(choice) <= len(keys):
        return keys[int(choice) - 1]
    console.print(f"❌ Invalid selection: {choice}")
    raise typer.Exit(1)


def show_plan(vmid: Optional[int], desired: DesiredConfig) -> None:
    profile = Config.get_os_profile(desired.os_key)
    table = Table(title="Provisioning plan")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("VMID", str(vmid) if vmid is not None else "auto")
    table.add_row("Name", desired.name)
    table.add_row("OS", profile.display_name)
    table.add_row("Cores", str(desired.cores))
    table.add_row("Memory", f"{desired.memory_mb} MB")
    table.add_row("Disk", f"{desired.disk_gb} GB")
    table.add_row("Storage", desired.storage)
    table.add_row("Force recreate", str(desired.force_recreate))
    console.print(table)


def show_summary(result: ProvisionResult, user: str, tools: dict) -> None:
    table = Table(title=f"VM {result.vmid} ready")
    table.add_column("Item", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("State", result.state.value)
    table.add_row("Path", " → ".join(s.value for s in result.transitions))
    table.add_row("IP address", result.ip_address or "unknown")
    table.add_row("SSH", f"ssh -i {Config.GUEST_SSH_KEY} {user}@{result.ip_address}")
    for tool, ok in tools.items():
        table.add_row(tool, "✅" if ok else "❌")
    for advisory in result.advisories:
        table.add_row(f"⚠️  {advisory.field}", f"{advisory.current} (wanted {advisory.desired}): {advisory.hint}")
    console.print(table)


@app.command()
def provision(
    os_key: Optional[str] = typer.Option(None, "--os", help="OS class: rocky10, debian13 or ubuntu2404"),
    vmid: Optional[int] = typer.Option(None, "--vmid", help="VM identifier (auto-generated when omitted)"),
    name: str = typer.Option(Config.VM_NAME, help="VM name"),
    cores: int = typer.Option(Config.VM_CORES, help="CPU cores"),
    memory: int = typer.Option(Config.VM_MEMORY, help="Memory in MB"),
    disk: int = typer.Option(Config.VM_DISK_SIZE, help="Disk size in GB"),
    storage: Optional[str] = typer.Option(None, help="Storage pool (auto-detected when omitted)"),
    force: bool = typer.Option(False, "--force", help="Destroy and recreate a complete VM"),
    resume: bool = typer.Option(False, "--resume", help="Reuse the VMID of the last run"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    skip_handoff: bool = typer.Option(False, "--skip-handoff", help="Stop once the VM answers SSH"),
) -> None:
    """Create or resume a lab VM, then bootstrap its toolchain."""
    lock = ProcessLock(os.path.join(Config.STATE_DIR, "pvelab.lock"))
    try:
        lock.acquire()
    except LockHeldError as e:
        console.print(f"❌ Another run is in progress: {e}")
        raise typer.Exit(2)

    try:
        log_file = attach_run_log()
        console.print(f"📝 Logging to {log_file}")
        state = StateFile(os.path.join(Config.STATE_DIR, "pvelab.state"))

        if resume and vmid is None:
            saved = state.load("vmid")
            if saved is None:
                console.print("❌ Nothing to resume: no saved VMID")
                raise typer.Exit(1)
            vmid = int(saved)
            os_key = os_key or state.load("os")
            storage = storage or state.load("storage")
            console.print(f"🔁 Resuming VM {vmid}")

        os_key = os_key or choose_os()
        profile = Config.get_os_profile(os_key)

        if not skip_handoff and not Path(Config.PLAYBOOK_DIR).is_dir():
            console.print(f"❌ Playbook directory not found: {Config.PLAYBOOK_DIR} (use --skip-handoff)")
            raise typer.Exit(1)

        client = get_client()
        selector = StorageSelector(client, storage)
        if storage and not selector.validate(storage):
            console.print(f"❌ Storage '{storage}' is not available on {client.node}")
            raise typer.Exit(1)
        storage = storage or selector.select()

        desired = DesiredConfig(
            name=name,
            cores=cores,
            memory_mb=memory,
            disk_gb=disk,
            storage=storage,
            os_key=os_key,
            force_recreate=force,
        )
        ensure_keypair(Config.GUEST_SSH_KEY)

        show_plan(vmid, desired)
        if not yes and not typer.confirm("Proceed?", default=True):
            console.print("Aborted.")
            raise typer.Exit(0)

        controller = LifecycleController.for_client(client, Config.GUEST_SSH_KEY)
        state.save("name", name)
        state.save("os", os_key)
        state.save("storage", storage)

        try:
            result = controller.provision(desired, vmid=vmid)
        finally:
            if controller.vmid is not None:
                state.save("vmid", controller.vmid)
        if result.ip_address is None:
            result.ip_address = controller.reach(result.vmid, profile.default_user)
        state.save("ip", result.ip_address)

        credentials = controller.guest_credentials(profile.default_user).for_host(result.ip_address)
        controller.waiter.await_cloud_init(result.ip_address, credentials, Config.CLOUD_INIT_TIMEOUT)

        tools: dict = {}
        with RemoteShell(credentials) as guest:
            bootstrapper = GuestBootstrapper(guest)
            bootstrapper.install_guest_agent()
            if not skip_handoff:
                if not bootstrapper.handoff():
                    console.print(f"❌ Playbook run failed on VM {result.vmid}; re-run to retry")
                    raise typer.Exit(1)
                tools = bootstrapper.verify_tools()
                ledger = TagLedger(client)
                for tag in Config.SERVICE_TAGS:
                    if tools.get(tag):
                        ledger.add_one(result.vmid, tag)

        show_summary(result, profile.default_user, tools)

    except PvelabError as e:
        step = getattr(e, "step", None)
        console.print(f"❌ Failed{f' at {step}' if step else ''}: {e}")
        console.print("ℹ️  Partial resources are left in place; re-run the same command to resume.")
        raise typer.Exit(1)
    finally:
        lock.release()


@app.command()
def inspect(vmid: int = typer.Argument(..., help="VM identifier")) -> None:
    """Show the configuration facets of a VM."""
    client = get_client()
    try:
        state = ResourceInspector(client).find(vmid)
    except PvelabError as e:
        console.print(f"❌ Inspection failed: {e}")
        raise typer.Exit(1)

    if state is None:
        console.print(f"ℹ️  VM {vmid} does not exist")
        raise typer.Exit(1)

    table = Table(title=f"VM {vmid} ({state.name})")
    table.add_column("Facet", style="cyan")
    table.add_column("Present", style="green")
    table.add_row("Firmware store", "✅" if state.has_firmware_store else "❌")
    table.add_row("Primary disk", f"✅ {state.disk_size_gb}G" if state.has_primary_disk else "❌")
    table.add_row("Init drive", "✅" if state.has_init_drive else "❌")
    table.add_row("Boot order", "✅" if state.has_boot_order else "❌")
    table.add_row("Guest agent", "✅" if state.has_guest_agent else "❌")
    table.add_row("Complete", "✅" if state.is_complete else "❌")
    table.add_row("Tags", state.tags.render() or "-")
    console.print(table)


@app.command()
def tag(
    vmid: int = typer.Argument(..., help="VM identifier"),
    tags: List[str] = typer.Argument(..., help="Tags to add"),
) -> None:
    """Add tags to a VM, keeping existing ones."""
    ledger = TagLedger(get_client())
    results = [ledger.add_one(vmid, t) for t in tags]
    if not all(results):
        console.print(f"⚠️  Some tags could not be set on VM {vmid}")
        raise typer.Exit(1)
    console.print(f"✅ VM {vmid} tagged: {', '.join(tags)}")


@app.command("next-vmid")
def next_vmid() -> None:
    """Print the next free VM identifier."""
    client = get_client()
    try:
        console.print(generate_identifier(client))
    except PvelabError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging")
) -> None:
    """
    Idempotent lab VM provisioning for Proxmox VE.

    Configuration comes from environment variables or a .env file.
    """
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif verbose:
        logging.getLogger().setLevel(logging.INFO)


if __name__ == "__main__":
    app()
