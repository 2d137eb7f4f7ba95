"""SSH command execution over paramiko.

Used both for the Proxmox host (``qm disk import``, neighbor tables, lease
files) and for guests once they answer on the network.
"""

import logging
import os
import posixpath
import shlex
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, List, Optional, Sequence

import paramiko

from pvelab.exceptions import RemoteUnreachable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SSHCredentials:
    host: str
    user: str = "root"
    key_path: Optional[str] = None
    port: int = 22

    def for_host(self, host: str) -> "SSHCredentials":
        return replace(self, host=host)


@dataclass
class CommandResult:
    """Outcome of one remote command. Non-zero exits are data, not errors."""

    argv: List[str]
    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class RemoteShell:
    """Lazily connected SSH session that runs argv lists, never raw strings."""

    def __init__(self, credentials: SSHCredentials, connect_timeout: float = 10.0) -> None:
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.ssh_client: Optional[paramiko.SSHClient] = None

    def _get_ssh_client(self) -> paramiko.SSHClient:
        """Get or create the SSH connection.

        Raises:
            RemoteUnreachable: If the host refuses or times out
        """
        if self.ssh_client is None:
            creds = self.credentials
            key_file = os.path.expanduser(creds.key_path) if creds.key_path else None

            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    hostname=creds.host,
                    port=creds.port,
                    username=creds.user,
                    key_filename=key_file,
                    timeout=self.connect_timeout,
                    banner_timeout=self.connect_timeout,
                    auth_timeout=self.connect_timeout,
                    look_for_keys=key_file is None,
                    allow_agent=key_file is None,
                )
            except (paramiko.SSHException, OSError) as e:
                client.close()
                logger.debug(f"SSH connect to {creds.user}@{creds.host} failed: {e}")
                raise RemoteUnreachable(f"{creds.user}@{creds.host}: {e}") from e
            self.ssh_client = client
        return self.ssh_client

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        stdin_data: Optional[str] = None,
    ) -> CommandResult:
        """Execute a command and collect its output.

        Args:
            argv: Program and arguments; each element is quoted individually
            timeout: Channel timeout in seconds
            stdin_data: Text written to the command's stdin

        Returns:
            CommandResult with exit status and stripped output

        Raises:
            RemoteUnreachable: If the connection fails or drops mid-command
        """
        command = shlex.join(argv)
        ssh = self._get_ssh_client()
        logger.debug(f"[{self.credentials.host}] $ {command}")
        try:
            stdin, stdout, stderr = ssh.exec_command(command, timeout=timeout)
            if stdin_data is not None:
                stdin.write(stdin_data)
                stdin.channel.shutdown_write()
            output = stdout.read().decode(errors="replace").strip()
            error = stderr.read().decode(errors="replace").strip()
            exit_status = stdout.channel.recv_exit_status()
        except paramiko.ChannelException as e:
            # Server refused a new session; the connection itself is still usable
            raise RemoteUnreachable(f"{self.credentials.host}: channel refused: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise RemoteUnreachable(f"{self.credentials.host}: {e}") from e

        if exit_status != 0:
            logger.debug(f"[{self.credentials.host}] exit {exit_status}: {error}")
        return CommandResult(list(argv), exit_status, output, error)

    def put_file(self, local_path: str, remote_path: str) -> None:
        """Upload one file over SFTP."""
        ssh = self._get_ssh_client()
        try:
            sftp = ssh.open_sftp()
            try:
                sftp.put(str(local_path), remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteUnreachable(f"{self.credentials.host}: upload of {local_path} failed: {e}") from e

    def put_tree(self, local_dir: str, remote_dir: str) -> int:
        """Upload a directory tree over SFTP. Returns the number of files copied."""
        ssh = self._get_ssh_client()
        root = Path(local_dir)
        copied = 0
        try:
            sftp = ssh.open_sftp()
            try:
                _sftp_mkdir(sftp, remote_dir)
                for path in sorted(root.rglob("*")):
                    target = posixpath.join(remote_dir, *path.relative_to(root).parts)
                    if path.is_dir():
                        _sftp_mkdir(sftp, target)
                    else:
                        _sftp_mkdir(sftp, posixpath.dirname(target))
                        sftp.put(str(path), target)
                        copied += 1
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteUnreachable(f"{self.credentials.host}: upload of {local_dir} failed: {e}") from e
        return copied

    def close(self) -> None:
        """Close the SSH connection."""
        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None

    def __enter__(self) -> "RemoteShell":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


def _sftp_mkdir(sftp: paramiko.SFTPClient, path: str) -> None:
    try:
        sftp.stat(path)
    except FileNotFoundError:
        sftp.mkdir(path)


def ensure_keypair(private_key_path: str, bits: int = 4096) -> str:
    """Generate an RSA key pair for guest access if none exists.

    Returns:
        Path of the public key
    """
    private_path = Path(os.path.expanduser(private_key_path))
    public_path = Path(f"{private_path}.pub")
    if private_path.exists() and public_path.exists():
        logger.info(f"✅ Using existing SSH key pair: {private_path}")
        return str(public_path)

    logger.info(f"🔑 Generating SSH key pair at {private_path}")
    private_path.parent.mkdir(parents=True, exist_ok=True)
    key = paramiko.RSAKey.generate(bits)
    key.write_private_key_file(str(private_path))
    os.chmod(private_path, 0o600)
    public_path.write_text(f"{key.get_name()} {key.get_base64()} pvelab\n")
    return str(public_path)
