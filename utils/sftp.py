"""
Upload Collaborators

Stores source documents before extraction and returns a URL the extraction
service can reference.

- SftpUploader: SSH key authentication, automatic retries, remote directory creation
- LocalUploader: leaves the file in place and returns its file:// URL
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Protocol, Tuple

import paramiko
from paramiko import SFTPClient, SSHClient

from utils.config import Settings
from utils.errors import DependencyError

logger = logging.getLogger(__name__)


class Uploader(Protocol):
    async def store(self, path: Path) -> dict[str, str]:
        ...


def get_sftp_client(config: Settings) -> Tuple[SSHClient, SFTPClient]:
    """
    Create SFTP client connection using SSH key authentication.

    Returns:
        Tuple of (ssh_client, sftp_client)

    Raises:
        ValueError: If SFTP host/username are not configured
        FileNotFoundError: If SSH key file not found
        IOError: If connection cannot be established
    """
    if not config.SFTP_HOST:
        raise ValueError("SFTP_HOST is not configured")

    if not config.SFTP_USERNAME:
        raise ValueError("SFTP_USERNAME is not configured")

    key_path = Path(config.SFTP_KEY_PATH)
    if not key_path.exists():
        raise FileNotFoundError(f"SSH key file not found: {key_path}")

    try:
        if config.SFTP_KEY_PASSPHRASE:
            private_key = paramiko.RSAKey.from_private_key_file(
                str(key_path),
                password=config.SFTP_KEY_PASSPHRASE
            )
        else:
            private_key = paramiko.RSAKey.from_private_key_file(str(key_path))
    except paramiko.PasswordRequiredException:
        raise ValueError("SSH key requires passphrase but SFTP_KEY_PASSPHRASE not set")
    except paramiko.SSHException as e:
        raise paramiko.SSHException(f"Failed to load SSH key: {e}") from e

    ssh_client = SSHClient()
    ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    try:
        ssh_client.connect(
            hostname=config.SFTP_HOST,
            port=config.SFTP_PORT,
            username=config.SFTP_USERNAME,
            pkey=private_key,
            timeout=config.SFTP_TIMEOUT,
            auth_timeout=config.SFTP_TIMEOUT,
        )
        sftp_client = ssh_client.open_sftp()
        return ssh_client, sftp_client

    except Exception as e:
        ssh_client.close()
        raise IOError(f"Failed to establish SFTP connection: {e}") from e


def upload_file(
    config: Settings,
    local_path: str,
    remote_dir: str,
    remote_name: str | None = None,
    retries: int = 3,
) -> str:
    """
    Upload file to SFTP server with automatic retry and directory creation.

    Args:
        config: Settings carrying the SFTP connection parameters
        local_path: Path to local file to upload
        remote_dir: Remote directory path (will be created if needed)
        remote_name: Remote filename (uses local basename if None)
        retries: Number of retry attempts on failure

    Returns:
        Remote path of the uploaded file

    Raises:
        FileNotFoundError: If local file doesn't exist
        IOError: If upload fails after all retries
    """
    local_file = Path(local_path)
    if not local_file.is_file():
        raise FileNotFoundError(f"Local file not found: {local_path}")

    if remote_name is None:
        remote_name = local_file.name

    remote_path = f"{remote_dir.rstrip('/')}/{remote_name}"
    last_error: Exception | None = None

    for attempt in range(retries + 1):
        ssh_client = None
        sftp_client = None
        try:
            ssh_client, sftp_client = get_sftp_client(config)
            _ensure_remote_dir(sftp_client, remote_dir)
            sftp_client.put(str(local_file), remote_path)

            remote_stat = sftp_client.stat(remote_path)
            local_stat = local_file.stat()
            if remote_stat.st_size != local_stat.st_size:
                raise IOError(
                    f"Upload verification failed: size mismatch "
                    f"(local={local_stat.st_size}, remote={remote_stat.st_size})"
                )

            logger.info("Uploaded to SFTP: remote_path=%s", remote_path)
            return remote_path

        except Exception as e:
            last_error = e

            if attempt < retries:
                wait_time = 2 ** attempt  # Exponential backoff: 1s, 2s, 4s
                logger.warning(
                    "SFTP upload failed (attempt %d/%d), retrying in %ds: %s",
                    attempt + 1, retries + 1, wait_time, str(e)
                )
                time.sleep(wait_time)
            else:
                logger.error(
                    "SFTP upload failed after %d attempts: remote_path=%s, error=%s",
                    retries + 1, remote_path, str(e)
                )

        finally:
            if sftp_client:
                sftp_client.close()
            if ssh_client:
                ssh_client.close()

    raise IOError(f"SFTP upload failed after {retries + 1} attempts: {last_error}") from last_error


def _ensure_remote_dir(sftp_client: SFTPClient, remote_dir: str) -> None:
    """
    Ensure remote directory exists, creating it recursively if needed.

    Raises:
        IOError: If directory creation fails
    """
    if not remote_dir or remote_dir == "/":
        return

    remote_dir = remote_dir.rstrip("/")

    try:
        sftp_client.stat(remote_dir)
        return
    except FileNotFoundError:
        pass

    parent_dir = str(Path(remote_dir).parent)
    if parent_dir != "/" and parent_dir != remote_dir:
        _ensure_remote_dir(sftp_client, parent_dir)

    try:
        sftp_client.mkdir(remote_dir)
        logger.debug("Created remote directory: %s", remote_dir)
    except IOError as e:
        # Another process may have created it in the meantime
        try:
            sftp_client.stat(remote_dir)
        except FileNotFoundError:
            raise IOError(f"Failed to create remote directory {remote_dir}: {e}") from e


class SftpUploader:
    """Upload collaborator that pushes documents to the SFTP drop."""

    def __init__(self, config: Settings, subdir: str = "gds_uploads") -> None:
        self.config = config
        self.remote_dir = f"{config.SFTP_REMOTE_BASE.rstrip('/')}/{subdir}"

    async def store(self, path: Path) -> dict[str, str]:
        try:
            remote_path = await asyncio.to_thread(
                upload_file, self.config, str(path), self.remote_dir
            )
        except (IOError, ValueError) as e:
            raise DependencyError(f"Upload failed for {path.name}: {e}") from e

        return {"url": f"sftp://{self.config.SFTP_HOST}{remote_path}"}


class LocalUploader:
    """Upload collaborator for single-host deployments."""

    async def store(self, path: Path) -> dict[str, str]:
        if not path.is_file():
            raise DependencyError(f"Upload failed: file not found: {path}")
        return {"url": path.resolve().as_uri()}
