"""Tests for proxmox_api module."""

from unittest import mock

import pytest
import requests
from proxmoxer.core import ResourceException

from pvelab.config import Config
from pvelab.exceptions import ConfigurationError, HostCallFailure, NotFound
from pvelab.proxmox_api import ProxmoxClient
from pvelab.remote import CommandResult


def _missing(vmid):
    return ResourceException(
        500, "Internal Server Error", f"Configuration file 'nodes/pve/qemu-server/{vmid}.conf' does not exist"
    )


@pytest.fixture
def client(mock_proxmox, mock_env):
    return ProxmoxClient(shell=mock.MagicMock())


def test_proxmox_client_init(mock_env):
    """Test ProxmoxClient initialization with API token parsing."""
    with mock.patch('pvelab.proxmox_api.ProxmoxAPI') as mock_api:
        client = ProxmoxClient()

    assert client.host == "pve.example.com"
    assert client.node == "pve"
    assert client.user == "root@pam"
    assert client.token_name == "pvelab"
    assert client.api_token == "secretvalue"
    mock_api.assert_called_once_with(
        "pve.example.com",
        user="root@pam",
        token_name="pvelab",
        token_value="secretvalue",
        verify_ssl=False,
    )


def test_node_defaults_to_short_hostname(mock_proxmox, mock_env, monkeypatch):
    """Test the node name falls back to the first label of the host."""
    monkeypatch.setattr(Config, "PVE_NODE", None)
    assert ProxmoxClient().node == "pve"


def test_proxmox_client_init_no_api_token(mock_env, monkeypatch):
    """Test ProxmoxClient initialization raises error when API_TOKEN is None."""
    monkeypatch.setattr(Config, "API_TOKEN", None)

    with pytest.raises(ValueError, match="API_TOKEN environment variable is not set"):
        ProxmoxClient()


def test_malformed_api_token(mock_env, monkeypatch):
    """Test a token without the ! separator is rejected."""
    monkeypatch.setattr(Config, "API_TOKEN", "root@pam=secret")

    with pytest.raises(ConfigurationError, match="user@realm!tokenid=secret"):
        ProxmoxClient()


def test_missing_host(mock_env, monkeypatch):
    """Test PVE_HOST is required."""
    monkeypatch.setattr(Config, "PVE_HOST", None)

    with pytest.raises(ConfigurationError, match="PVE_HOST"):
        ProxmoxClient()


class TestReads:
    def test_get_config(self, client, mock_proxmox):
        """Test get_config reads the node's qemu config."""
        mock_proxmox.nodes.return_value.qemu.return_value.config.get.return_value = {"name": "lab"}

        assert client.get_config(105) == {"name": "lab"}
        mock_proxmox.nodes.assert_called_with("pve")
        mock_proxmox.nodes.return_value.qemu.assert_called_with(105)

    def test_get_config_missing_vm(self, client, mock_proxmox):
        """Test a missing VM maps to NotFound."""
        mock_proxmox.nodes.return_value.qemu.return_value.config.get.side_effect = _missing(105)

        with pytest.raises(NotFound):
            client.get_config(105)

    def test_get_config_other_error(self, client, mock_proxmox):
        """Test other API errors map to HostCallFailure."""
        mock_proxmox.nodes.return_value.qemu.return_value.config.get.side_effect = ResourceException(
            403, "Forbidden", "Permission check failed (/vms/105, VM.Audit)"
        )

        with pytest.raises(HostCallFailure, match="Permission check failed"):
            client.get_config(105)

    def test_transport_error(self, client, mock_proxmox):
        """Test connection errors map to HostCallFailure."""
        mock_proxmox.nodes.return_value.qemu.return_value.config.get.side_effect = (
            requests.exceptions.ConnectionError("connection refused")
        )

        with pytest.raises(HostCallFailure, match="connection refused"):
            client.get_config(105)

    def test_get_status(self, client, mock_proxmox):
        """Test get_status returns the power state."""
        mock_proxmox.nodes.return_value.qemu.return_value.status.current.get.return_value = {"status": "running"}
        assert client.get_status(105) == "running"

    def test_identifiers_standalone(self, client, mock_proxmox):
        """Test a standalone host lists its own VMs and containers."""
        mock_proxmox.nodes.return_value.qemu.get.return_value = [{"vmid": 100}, {"vmid": "105"}]
        mock_proxmox.nodes.return_value.lxc.get.return_value = [{"vmid": 101}]

        assert client.list_allocated_identifiers() == [100, 101, 105]
        mock_proxmox.cluster.resources.get.assert_not_called()

    def test_identifiers_clustered(self, client, mock_proxmox):
        """Test a cluster member lists identifiers cluster-wide."""
        mock_proxmox.cluster.status.get.return_value = [{"type": "cluster", "name": "lab"}, {"type": "node"}]
        mock_proxmox.cluster.resources.get.return_value = [{"vmid": 300, "type": "qemu"}, {"vmid": 120, "type": "lxc"}]

        assert client.list_allocated_identifiers() == [120, 300]
        mock_proxmox.cluster.resources.get.assert_called_once_with(type="vm")

    def test_storage_pools(self, client, mock_proxmox):
        """Test storage pools are filtered by content type."""
        mock_proxmox.nodes.return_value.storage.get.return_value = [{"storage": "local-zfs"}]

        assert client.list_storage_pools() == [{"storage": "local-zfs"}]
        mock_proxmox.nodes.return_value.storage.get.assert_called_once_with(content="images")

    def test_guest_network_interfaces(self, client, mock_proxmox):
        """Test the agent result list is unwrapped."""
        agent = mock_proxmox.nodes.return_value.qemu.return_value.agent
        agent.return_value.get.return_value = {"result": [{"name": "eth0"}]}

        assert client.guest_network_interfaces(105) == [{"name": "eth0"}]
        agent.assert_called_with("network-get-interfaces")


class TestMutations:
    def test_create(self, client, mock_proxmox):
        """Test create posts the VM definition on the node."""
        client.create(105, name="lab", cores=2)
        mock_proxmox.nodes.return_value.qemu.create.assert_called_once_with(vmid=105, name="lab", cores=2)

    def test_configure(self, client, mock_proxmox):
        """Test configure posts config keys."""
        client.configure(105, agent="enabled=1")
        mock_proxmox.nodes.return_value.qemu.return_value.config.post.assert_called_once_with(agent="enabled=1")

    def test_configure_failure(self, client, mock_proxmox):
        """Test a rejected config change raises HostCallFailure with the step name."""
        mock_proxmox.nodes.return_value.qemu.return_value.config.post.side_effect = ResourceException(
            400, "Parameter verification failed", "efidisk0: invalid format"
        )

        with pytest.raises(HostCallFailure) as exc_info:
            client.configure(105, efidisk0="bogus")
        assert exc_info.value.step == "configure"

    @mock.patch('pvelab.proxmox_api.Tasks')
    def test_task_is_awaited(self, mock_tasks, client, mock_proxmox):
        """Test a returned task UPID is waited on."""
        upid = "UPID:pve:0000AAAA:00BBBBBB:65000000:qmstart:105:root@pam:"
        mock_proxmox.nodes.return_value.qemu.return_value.status.start.post.return_value = upid
        mock_tasks.blocking_status.return_value = {"status": "stopped", "exitstatus": "OK"}

        client.start(105)

        mock_tasks.blocking_status.assert_called_once_with(mock_proxmox, upid, timeout=Config.TASK_TIMEOUT)

    @mock.patch('pvelab.proxmox_api.Tasks')
    def test_failed_task_raises(self, mock_tasks, client, mock_proxmox):
        """Test a task ending in error raises HostCallFailure."""
        upid = "UPID:pve:0000AAAA:00BBBBBB:65000000:qmdestroy:105:root@pam:"
        mock_proxmox.nodes.return_value.qemu.return_value.delete.return_value = upid
        mock_tasks.blocking_status.return_value = {"status": "stopped", "exitstatus": "VM is locked (backup)"}

        with pytest.raises(HostCallFailure, match="VM is locked"):
            client.destroy(105)

    def test_resize_disk(self, client, mock_proxmox):
        """Test resize sends the absolute size."""
        client.resize_disk(105, "scsi0", 32)
        mock_proxmox.nodes.return_value.qemu.return_value.resize.put.assert_called_once_with(disk="scsi0", size="32G")

    def test_stop(self, client, mock_proxmox):
        """Test stop posts to the status endpoint."""
        client.stop(105)
        mock_proxmox.nodes.return_value.qemu.return_value.status.stop.post.assert_called_once_with()


class TestImportDisk:
    def test_import_disk_parses_volume(self, client):
        """Test the imported volume id is taken from qm output."""
        client.shell.run.return_value = CommandResult(
            [], 0, "transferred 2.2 GiB of 2.2 GiB (100.00%)\nunused0: successfully imported disk 'local-zfs:vm-105-disk-1'"
        )

        assert client.import_disk(105, "/var/lib/vz/template/qcow/noble.img", "local-zfs") == "local-zfs:vm-105-disk-1"
        client.shell.run.assert_called_once_with(
            ["qm", "disk", "import", "105", "/var/lib/vz/template/qcow/noble.img", "local-zfs", "--format", "qcow2"]
        )

    def test_import_disk_falls_back_to_disk_name(self, client):
        """Test output without the volume id still yields the disk name."""
        client.shell.run.return_value = CommandResult([], 0, "Successfully imported disk as 'vm-105-disk-2'")

        assert client.import_disk(105, "/img", "local-lvm") == "local-lvm:vm-105-disk-2"

    def test_import_disk_failure(self, client):
        """Test a failing import raises HostCallFailure with the host's error text."""
        client.shell.run.return_value = CommandResult([], 255, "", "storage 'nope' does not exist")

        with pytest.raises(HostCallFailure, match="storage 'nope' does not exist"):
            client.import_disk(105, "/img", "nope")

    def test_import_disk_unparseable(self, client):
        """Test output without any disk name is an error."""
        client.shell.run.return_value = CommandResult([], 0, "done")

        with pytest.raises(HostCallFailure, match="could not determine"):
            client.import_disk(105, "/img", "local-zfs")
