"""Bounded polling for network, shell and cloud-init readiness.

Waits never raise on timeout. They return ``TIMEOUT`` and let the caller
decide whether that is fatal.
"""

import ipaddress
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Union

from pvelab.config import Config
from pvelab.exceptions import PvelabError, RemoteUnreachable
from pvelab.inspector import ResourceInspector
from pvelab.models import TIMEOUT, WaitOutcome
from pvelab.remote import RemoteShell, SSHCredentials

logger = logging.getLogger(__name__)

DHCPD_LEASE_RE = re.compile(r"lease\s+(\S+)\s*\{([^}]*)\}", re.MULTILINE)

# Hosts pinged every poll to keep the neighbor table warm: .1-.5 and every tenth address.
REFRESH_OFFSETS = [1, 2, 3, 4, 5] + list(range(10, 255, 10))

# Pings every address given after the parallelism argument, concurrently on the host.
PING_SCRIPT = 'p=$1; shift; printf "%s\\n" "$@" | xargs -P "$p" -n 1 ping -q -c 1 -W 1 >/dev/null 2>&1; exit 0'


@dataclass
class NetworkTarget:
    """What one network wait is looking for."""

    vmid: int
    mac: Optional[str]
    bridge: Optional[str]
    started: float
    swept: bool = False


def _is_usable_ipv4(value: str) -> bool:
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return False
    return address.version == 4 and not address.is_loopback and not address.is_link_local


class ReadinessWaiter:
    """Discovers a VM's address and waits for its shell and cloud-init.

    Address discovery runs ``self.strategies`` in order on every poll and
    stops at the first one that yields an address. The last strategy is an
    active ping sweep of the bridge subnet; it fires once per wait, after
    ``sweep_after`` seconds.
    """

    def __init__(
        self,
        client: Any,
        host_shell: RemoteShell,
        inspector: Optional[ResourceInspector] = None,
        poll_interval: Optional[float] = None,
        sweep_after: Optional[float] = None,
        lease_files: Optional[Sequence[str]] = None,
        shell_factory: Callable[[SSHCredentials], RemoteShell] = RemoteShell,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        sweep_workers: int = 32,
    ) -> None:
        self.client = client
        self.host_shell = host_shell
        self.inspector = inspector or ResourceInspector(client)
        self.poll_interval = Config.POLL_INTERVAL if poll_interval is None else poll_interval
        self.sweep_after = Config.ARP_SWEEP_AFTER if sweep_after is None else sweep_after
        self.lease_files = list(Config.DHCP_LEASE_FILES if lease_files is None else lease_files)
        self.shell_factory = shell_factory
        self.sleep = sleep
        self.clock = clock
        self.sweep_workers = sweep_workers
        self.strategies: List[Callable[[NetworkTarget], Optional[str]]] = [
            self.address_from_guest_agent,
            self.address_from_neighbors,
            self.address_from_leases,
            self.address_from_sweep,
        ]

    # -- network --

    def await_network(self, vmid: int, timeout: float) -> Union[str, WaitOutcome]:
        """Poll until some strategy reports an IPv4 address for the VM.

        Returns:
            The address, or ``TIMEOUT``
        """
        state = self.inspector.inspect(vmid)
        target = NetworkTarget(vmid, state.mac_address, state.bridge, started=self.clock())
        deadline = target.started + timeout
        logger.info(f"⏳ Waiting for VM {vmid} to get an IP address (timeout {timeout:.0f}s, MAC {target.mac})")

        while True:
            self._refresh_neighbors(target)
            for strategy in self.strategies:
                address = strategy(target)
                if address:
                    logger.info(f"✅ VM {vmid} has IP {address} (via {strategy.__name__})")
                    return address
            if self.clock() >= deadline:
                break
            self.sleep(self.poll_interval)

        logger.warning(f"⚠️  No IP address for VM {vmid} after {timeout:.0f}s")
        return TIMEOUT

    def address_from_guest_agent(self, target: NetworkTarget) -> Optional[str]:
        try:
            interfaces = self.client.guest_network_interfaces(target.vmid)
        except PvelabError as e:
            logger.debug(f"Guest agent not answering for VM {target.vmid}: {e}")
            return None

        for iface in interfaces:
            if iface.get("name") == "lo":
                continue
            for addr in iface.get("ip-addresses", []) or []:
                if addr.get("ip-address-type") != "ipv4":
                    continue
                value = addr.get("ip-address", "")
                if _is_usable_ipv4(value):
                    return value  # type: ignore[no-any-return]
        return None

    def address_from_neighbors(self, target: NetworkTarget) -> Optional[str]:
        if not target.mac:
            return None
        result = self._host_run(["ip", "-j", "neigh", "show"])
        if result is None or not result.ok or not result.stdout:
            return None
        try:
            entries = json.loads(result.stdout)
        except ValueError:
            logger.debug("Unparseable neighbor table output")
            return None

        mac = target.mac.lower()
        for entry in entries:
            if str(entry.get("lladdr", "")).lower() != mac:
                continue
            if "FAILED" in (entry.get("state") or []):
                continue
            address = entry.get("dst", "")
            if _is_usable_ipv4(address):
                return address  # type: ignore[no-any-return]
        return None

    def address_from_leases(self, target: NetworkTarget) -> Optional[str]:
        if not target.mac:
            return None
        mac = target.mac.lower()
        for path in self.lease_files:
            result = self._host_run(["cat", path])
            if result is None or not result.ok:
                continue
            address = parse_lease_file(result.stdout, mac)
            if address:
                logger.debug(f"Found lease for {mac} in {path}")
                return address
        return None

    def address_from_sweep(self, target: NetworkTarget) -> Optional[str]:
        """Ping every host of the bridge subnet once, then re-read the neighbor table.

        Only fires once per wait, after ``sweep_after`` seconds have passed.
        """
        if target.swept or not target.mac or not target.bridge:
            return None
        if self.clock() - target.started < self.sweep_after:
            return None
        target.swept = True

        network = self._bridge_network(target.bridge)
        if network is None:
            return None
        logger.info(f"🔍 Sweeping {network} on {target.bridge} to populate the neighbor table")
        self._ping_all([str(host) for host in network.hosts()][:254])
        self.sleep(2)
        return self.address_from_neighbors(target)

    # -- shell and cloud-init --

    def await_shell(self, address: str, credentials: SSHCredentials, timeout: float) -> WaitOutcome:
        """Poll until a remote command succeeds on the guest."""
        creds = credentials.for_host(address)
        deadline = self.clock() + timeout
        logger.info(f"⏳ Waiting for SSH on {creds.user}@{address} (timeout {timeout:.0f}s)")

        while True:
            shell = self.shell_factory(creds)
            try:
                if shell.run(["echo", "SSH OK"], timeout=10).ok:
                    logger.info(f"✅ SSH is ready on {address}")
                    return WaitOutcome.READY
            except RemoteUnreachable as e:
                logger.debug(f"SSH not ready on {address}: {e}")
            finally:
                shell.close()
            if self.clock() >= deadline:
                break
            self.sleep(self.poll_interval)

        logger.warning(f"⚠️  SSH not reachable on {address} after {timeout:.0f}s")
        return TIMEOUT

    def await_cloud_init(self, address: str, credentials: SSHCredentials, timeout: float) -> WaitOutcome:
        """Wait for cloud-init to finish.

        ``done``, ``disabled`` and a missing cloud-init all count as finished;
        ``error`` is finished with a warning.
        """
        creds = credentials.for_host(address)
        deadline = self.clock() + timeout
        logger.info(f"⏳ Waiting for cloud-init on {address} (timeout {timeout:.0f}s)")

        shell = self.shell_factory(creds)
        try:
            while True:
                try:
                    result = shell.run(["cloud-init", "status"], timeout=30)
                except RemoteUnreachable as e:
                    logger.debug(f"cloud-init status check failed: {e}")
                    shell.close()
                else:
                    status = result.stdout.lower()
                    if result.exit_status == 127 or "not found" in result.stderr.lower():
                        logger.info("ℹ️  cloud-init not installed, continuing")
                        return WaitOutcome.READY
                    if "status: done" in status or "status: disabled" in status:
                        logger.info(f"✅ cloud-init finished on {address}")
                        return WaitOutcome.READY
                    if "status: error" in status:
                        logger.warning(f"⚠️  cloud-init reported an error on {address}, continuing")
                        return WaitOutcome.READY
                if self.clock() >= deadline:
                    break
                self.sleep(self.poll_interval)
        finally:
            shell.close()

        logger.warning(f"⚠️  cloud-init still running on {address} after {timeout:.0f}s, continuing")
        return TIMEOUT

    # -- helpers --

    def _host_run(self, argv: List[str], timeout: Optional[float] = None) -> Any:
        try:
            return self.host_shell.run(argv, timeout=timeout)
        except RemoteUnreachable as e:
            logger.debug(f"Host command {argv[0]} failed: {e}")
            return None

    def _bridge_network(self, bridge: str) -> Optional[ipaddress.IPv4Network]:
        result = self._host_run(["ip", "-j", "-4", "addr", "show", "dev", bridge])
        if result is None or not result.ok or not result.stdout:
            logger.debug(f"No IPv4 address on bridge {bridge}")
            return None
        try:
            links = json.loads(result.stdout)
        except ValueError:
            return None
        for link in links:
            for info in link.get("addr_info", []):
                if info.get("family") == "inet" and info.get("local"):
                    prefix = max(int(info.get("prefixlen", 24)), 24)
                    return ipaddress.IPv4Network(f"{info['local']}/{prefix}", strict=False)
        return None

    def _refresh_neighbors(self, target: NetworkTarget) -> None:
        """Ping a handful of well-known addresses so the neighbor table stays populated."""
        if not target.bridge or not target.mac:
            return
        network = self._bridge_network(target.bridge)
        if network is None:
            return
        base = int(network.network_address)
        hosts = [str(ipaddress.IPv4Address(base + offset)) for offset in REFRESH_OFFSETS]
        self._ping_all(hosts)

    def _ping_all(self, hosts: List[str]) -> None:
        """Ping all hosts in one command run on the Proxmox host."""
        if not hosts:
            return
        argv = ["sh", "-c", PING_SCRIPT, "ping-sweep", str(self.sweep_workers), *hosts]
        self._host_run(argv, timeout=60)


def parse_lease_file(content: str, mac: str) -> Optional[str]:
    """Find the address leased to ``mac`` in dnsmasq or ISC dhcpd lease text."""
    mac = mac.lower()
    for match in DHCPD_LEASE_RE.finditer(content):
        if f"hardware ethernet {mac};" in match.group(2).lower() and _is_usable_ipv4(match.group(1)):
            return match.group(1)

    # dnsmasq: <expiry> <mac> <ip> <hostname> <client-id>
    for line in content.splitlines():
        fields = line.split()
        if len(fields) >= 3 and fields[1].lower() == mac and _is_usable_ipv4(fields[2]):
            return fields[2]
    return None
