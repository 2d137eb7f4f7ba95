"""
Guest bootstrap after the VM answers on SSH.

Installs the QEMU guest agent, ships the automation playbooks to the guest
and runs them there against localhost.
"""

import logging
import posixpath
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import yaml

from pvelab.config import Config
from pvelab.exceptions import ConfigurationError, RemoteUnreachable
from pvelab.remote import CommandResult, RemoteShell

logger = logging.getLogger(__name__)

APT_FAMILY = ("ubuntu", "debian")
DNF_FAMILY = ("rocky", "rhel", "centos", "fedora", "almalinux")

# tool name -> command whose success means the tool is usable
TOOL_CHECKS: Dict[str, List[str]] = {
    "ansible": ["ansible", "--version"],
    "terraform": ["terraform", "version"],
    "vault": ["vault", "version"],
    "jenkins": ["systemctl", "is-active", "--quiet", "jenkins"],
}


def parse_os_release(content: str) -> Dict[str, str]:
    """Parse /etc/os-release KEY=value lines."""
    values: Dict[str, str] = {}
    for line in content.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip('"')
    return values


class GuestBootstrapper:
    """Runs post-boot setup inside the guest over SSH."""

    def __init__(
        self,
        shell: RemoteShell,
        playbook_dir: Optional[str] = None,
        remote_root: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.shell = shell
        self.playbook_dir = Path(playbook_dir or Config.PLAYBOOK_DIR)
        self.remote_root = remote_root or Config.REMOTE_ROOT
        self.sleep = sleep

    @property
    def remote_playbooks(self) -> str:
        return posixpath.join(self.remote_root, "playbooks")

    def _sudo(self, *argv: str, timeout: Optional[float] = None) -> CommandResult:
        return self.shell.run(["sudo", *argv], timeout=timeout)

    def os_family(self) -> str:
        result = self.shell.run(["cat", "/etc/os-release"])
        if not result.ok:
            return ""
        return parse_os_release(result.stdout).get("ID", "").lower()

    def _install_packages(self, os_id: str, packages: Dict[str, str]) -> bool:
        """Install one package with the distro's package manager.

        Args:
            os_id: ID from /etc/os-release
            packages: Package name per family, keys ``apt`` and ``dnf``
        """
        if os_id in APT_FAMILY:
            if not self._sudo("apt-get", "update", "-qq", timeout=600).ok:
                return False
            return self._sudo("apt-get", "install", "-y", "-qq", packages["apt"], timeout=900).ok
        if os_id in DNF_FAMILY:
            for manager in ("dnf", "yum"):
                if self.shell.run(["which", manager]).ok:
                    return self._sudo(manager, "install", "-y", "-q", packages["dnf"], timeout=900).ok
            return False
        logger.warning(f"⚠️  Unsupported OS for package install: {os_id or 'unknown'}")
        return False

    def install_guest_agent(self, attempts: int = 3) -> bool:
        """Make sure qemu-guest-agent is installed and running.

        Failure is not fatal for the run; the result is reported to the caller.
        """
        for attempt in range(1, attempts + 1):
            try:
                if self._start_guest_agent():
                    return True
                logger.warning(f"⚠️  Guest agent install attempt {attempt}/{attempts} failed")
            except RemoteUnreachable as e:
                logger.warning(f"⚠️  Guest agent install attempt {attempt}/{attempts} failed: {e}")

            if attempt < attempts:
                self.sleep(attempt * 10)

        logger.warning("⚠️  QEMU guest agent could not be installed (non-critical)")
        return False

    def _start_guest_agent(self) -> bool:
        if self.shell.run(["systemctl", "is-active", "--quiet", "qemu-guest-agent"]).ok:
            logger.info("✅ QEMU guest agent already running")
            return True

        if not self.shell.run(["which", "qemu-ga"]).ok:
            os_id = self.os_family()
            logger.info(f"📦 Installing qemu-guest-agent on {os_id or 'unknown OS'}")
            if not self._install_packages(os_id, {"apt": "qemu-guest-agent", "dnf": "qemu-guest-agent"}):
                return False

        self._sudo("systemctl", "enable", "qemu-guest-agent")
        if self._sudo("systemctl", "start", "qemu-guest-agent").ok:
            logger.info("✅ QEMU guest agent started")
            return True
        return False

    def ensure_ansible(self) -> bool:
        if self.shell.run(["ansible-playbook", "--version"]).ok:
            logger.info("✅ Ansible already installed")
            return True
        os_id = self.os_family()
        if os_id in DNF_FAMILY:
            self._sudo("dnf", "install", "-y", "-q", "epel-release", timeout=600)
        logger.info("📦 Installing Ansible")
        return self._install_packages(os_id, {"apt": "ansible", "dnf": "ansible-core"})

    def upload_playbooks(self) -> int:
        """Copy the local playbook tree to the guest.

        Raises:
            ConfigurationError: If the playbook directory does not exist
            RemoteUnreachable: If the guest cannot receive the files
        """
        if not self.playbook_dir.is_dir():
            raise ConfigurationError(f"Playbook directory not found: {self.playbook_dir}")

        user = self.shell.credentials.user
        for argv in (["mkdir", "-p", self.remote_root], ["chown", "-R", f"{user}:", self.remote_root]):
            result = self._sudo(*argv)
            if not result.ok:
                raise RemoteUnreachable(f"{' '.join(argv)} failed: {result.stderr}")

        copied = self.shell.put_tree(str(self.playbook_dir), self.remote_playbooks)
        logger.info(f"📤 Copied {copied} files to {self.remote_playbooks}")
        return copied

    def write_inventory(self) -> str:
        """Write an inventory that targets the guest itself."""
        inventory = {
            "all": {
                "hosts": {
                    "localhost": {
                        "ansible_connection": "local",
                        "ansible_python_interpreter": "/usr/bin/python3",
                    }
                }
            }
        }
        inventory_dir = posixpath.join(self.remote_playbooks, "inventory")
        path = posixpath.join(inventory_dir, "localhost.yml")
        self.shell.run(["mkdir", "-p", inventory_dir])
        result = self.shell.run(["tee", path], stdin_data=yaml.safe_dump(inventory, default_flow_style=False))
        if not result.ok:
            raise RemoteUnreachable(f"Could not write inventory {path}: {result.stderr}")
        return path

    def run_playbook(self, playbook: str = "setup_devops_tools.yml", timeout: float = 3600) -> bool:
        """Run a playbook on the guest against localhost. Only success or failure is interpreted."""
        inventory = self.write_inventory()
        logger.info(f"▶️  Running {playbook} on the guest (this can take a while)")
        result = self.shell.run(
            ["ansible-playbook", "-i", inventory, posixpath.join(self.remote_playbooks, playbook)],
            timeout=timeout,
        )
        if result.ok:
            logger.info(f"✅ Playbook {playbook} completed")
        else:
            tail = "\n".join((result.stdout or result.stderr).splitlines()[-20:])
            logger.error(f"❌ Playbook {playbook} failed (exit {result.exit_status}):\n{tail}")
        return result.ok

    def handoff(self, playbook: str = "setup_devops_tools.yml") -> bool:
        self.upload_playbooks()
        if not self.ensure_ansible():
            logger.error("❌ Ansible could not be installed on the guest")
            return False
        return self.run_playbook(playbook)

    def verify_tools(self) -> Dict[str, bool]:
        """Check which of the bootstrapped tools respond."""
        results: Dict[str, bool] = {}
        for tool, argv in TOOL_CHECKS.items():
            try:
                results[tool] = self.shell.run(argv).ok
            except RemoteUnreachable as e:
                logger.warning(f"⚠️  Could not verify {tool}: {e}")
                results[tool] = False
            logger.info(f"{'✅' if results[tool] else '❌'} {tool}")
        return results
