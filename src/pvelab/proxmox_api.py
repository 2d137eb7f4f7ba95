import logging
import re
from typing import Any, Callable, Dict, List, Optional

import requests
from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException
from proxmoxer.tools import Tasks

from pvelab.config import Config
from pvelab.exceptions import ConfigurationError, HostCallFailure, NotFound, RemoteUnreachable
from pvelab.remote import RemoteShell, SSHCredentials

logger = logging.getLogger(__name__)

IMPORTED_VOLUME_RE = re.compile(r"successfully imported disk '([^']+)'")


def _error_text(exc: Exception) -> str:
    content = getattr(exc, "content", None)
    return f"{exc} {content}" if content else str(exc)


def is_not_found(exc: Exception) -> bool:
    """Proxmox reports a missing VM as a 500 whose message says the config does not exist."""
    return "does not exist" in _error_text(exc)


class ProxmoxClient:
    """Host management interface: proxmoxer for the REST API, SSH for ``qm`` CLI calls.

    Every call is synchronous. Asynchronous Proxmox tasks are awaited before
    returning so that one call equals one completed effect.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        node: Optional[str] = None,
        verify_ssl: Optional[bool] = None,
        shell: Optional[RemoteShell] = None,
    ) -> None:
        host = host or Config.PVE_HOST
        if not host:
            raise ConfigurationError("PVE_HOST environment variable is not set")
        self.host = host
        self.node = node or Config.PVE_NODE or host.split(".")[0]

        # Extract API token components
        if Config.API_TOKEN is None:
            raise ConfigurationError("API_TOKEN environment variable is not set")
        try:
            user_token, self.api_token = Config.API_TOKEN.split("=", 1)
            self.user, self.token_name = user_token.split("!", 1)
        except ValueError:
            raise ConfigurationError("API_TOKEN must look like user@realm!tokenid=secret")

        self.proxmox = ProxmoxAPI(
            host,
            user=self.user,
            token_name=self.token_name,
            token_value=self.api_token,
            verify_ssl=Config.PVE_VERIFY_SSL if verify_ssl is None else verify_ssl,
        )
        self.shell = shell or RemoteShell(
            SSHCredentials(host=host, user=Config.SSH_USER, key_path=Config.SSH_KEY_PATH)
        )

    def _vm(self, vmid: int) -> Any:
        return self.proxmox.nodes(self.node).qemu(vmid)

    def _call(self, step: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run one API call, mapping transport and API errors to HostCallFailure."""
        try:
            result = func(*args, **kwargs)
        except ResourceException as e:
            raise HostCallFailure(step, _error_text(e)) from e
        except requests.exceptions.RequestException as e:
            raise HostCallFailure(step, str(e)) from e
        return self._finish(step, result)

    def _finish(self, step: str, result: Any) -> Any:
        """Block until a returned task UPID finishes, failing on a non-OK exit."""
        if not (isinstance(result, str) and result.startswith("UPID:")):
            return result
        status = Tasks.blocking_status(self.proxmox, result, timeout=Config.TASK_TIMEOUT)
        if status is None:
            raise HostCallFailure(step, f"task {result} did not finish within {Config.TASK_TIMEOUT}s")
        if status.get("exitstatus") != "OK":
            raise HostCallFailure(step, f"task {result} ended with {status.get('exitstatus')}")
        return result

    # -- reads --

    def get_config(self, vmid: int) -> Dict[str, Any]:
        """Return the VM's current configuration.

        Raises:
            NotFound: If the VM does not exist on this node
            HostCallFailure: For any other API failure
        """
        try:
            return self._vm(vmid).config.get()  # type: ignore[no-any-return]
        except ResourceException as e:
            if is_not_found(e):
                raise NotFound(vmid) from e
            raise HostCallFailure("inspect", _error_text(e)) from e
        except requests.exceptions.RequestException as e:
            raise HostCallFailure("inspect", str(e)) from e

    def get_status(self, vmid: int) -> str:
        """Return the VM power state, e.g. ``running`` or ``stopped``."""
        try:
            current = self._vm(vmid).status.current.get()
        except ResourceException as e:
            if is_not_found(e):
                raise NotFound(vmid) from e
            raise HostCallFailure("status", _error_text(e)) from e
        except requests.exceptions.RequestException as e:
            raise HostCallFailure("status", str(e)) from e
        return str(current.get("status", "unknown"))

    def is_clustered(self) -> bool:
        status = self._call("cluster status", self.proxmox.cluster.status.get)
        return any(entry.get("type") == "cluster" for entry in status or [])

    def list_allocated_identifiers(self) -> List[int]:
        """All VM and container identifiers in use, cluster-wide when clustered."""
        if self.is_clustered():
            resources = self._call("list identifiers", self.proxmox.cluster.resources.get, type="vm")
            return sorted(int(r["vmid"]) for r in resources if "vmid" in r)

        node = self.proxmox.nodes(self.node)
        used = {int(vm["vmid"]) for vm in self._call("list identifiers", node.qemu.get)}
        used.update(int(ct["vmid"]) for ct in self._call("list identifiers", node.lxc.get))
        return sorted(used)

    def list_storage_pools(self, content_type: str = "images") -> List[Dict[str, Any]]:
        return self._call(  # type: ignore[no-any-return]
            "list storage", self.proxmox.nodes(self.node).storage.get, content=content_type
        )

    def guest_network_interfaces(self, vmid: int) -> List[Dict[str, Any]]:
        """Interfaces reported by the QEMU guest agent."""
        response = self._call("guest agent", self._vm(vmid).agent("network-get-interfaces").get)
        if isinstance(response, dict):
            return response.get("result", []) or []
        return response or []

    # -- mutations --

    def create(self, vmid: int, **params: Any) -> None:
        logger.info(f"🆕 Creating VM {vmid} ({params.get('name', '')}) on {self.node}")
        self._call("create", self.proxmox.nodes(self.node).qemu.create, vmid=vmid, **params)

    def configure(self, vmid: int, **params: Any) -> None:
        logger.debug(f"Configuring VM {vmid}: {params}")
        self._call("configure", self._vm(vmid).config.post, **params)

    def import_disk(self, vmid: int, image_path: str, storage: str) -> str:
        """Import a disk image into storage via ``qm disk import``.

        Returns:
            The volume id of the imported (still unused) disk, e.g. ``local-zfs:vm-101-disk-1``

        Raises:
            HostCallFailure: If the import fails or its volume cannot be identified
        """
        logger.info(f"💾 Importing {image_path} → {storage} for VM {vmid}")
        argv = ["qm", "disk", "import", str(vmid), image_path, storage, "--format", "qcow2"]
        try:
            result = self.shell.run(argv)
        except RemoteUnreachable as e:
            raise HostCallFailure("import disk", str(e)) from e
        if not result.ok:
            raise HostCallFailure("import disk", result.stderr or result.stdout)

        output = f"{result.stdout}\n{result.stderr}"
        match = IMPORTED_VOLUME_RE.search(output)
        if match:
            return match.group(1)
        match = re.search(rf"vm-{vmid}-disk-\d+", output)
        if match:
            return f"{storage}:{match.group(0)}"
        raise HostCallFailure("import disk", f"could not determine imported disk name for VM {vmid}")

    def resize_disk(self, vmid: int, disk: str, size_gb: int) -> None:
        logger.info(f"🔧 Resizing {disk} of VM {vmid} → {size_gb}G")
        self._call("resize disk", self._vm(vmid).resize.put, disk=disk, size=f"{size_gb}G")

    def start(self, vmid: int) -> None:
        logger.info(f"▶️  Starting VM {vmid}")
        self._call("start", self._vm(vmid).status.start.post)

    def stop(self, vmid: int) -> None:
        logger.info(f"⏹️  Stopping VM {vmid}")
        self._call("stop", self._vm(vmid).status.stop.post)

    def destroy(self, vmid: int) -> None:
        logger.info(f"🗑️  Destroying VM {vmid}")
        self._call("destroy", self._vm(vmid).delete)
