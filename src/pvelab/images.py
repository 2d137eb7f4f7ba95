import logging
import os
import posixpath
import time
from pathlib import Path
from typing import Optional

import requests

from pvelab.config import Config, OSProfile
from pvelab.exceptions import HostCallFailure, ImageDownloadError
from pvelab.remote import RemoteShell

logger = logging.getLogger(__name__)


class ImageManager:
    """Handles cloud image download and upload to the Proxmox host."""

    def __init__(
        self,
        host_shell: RemoteShell,
        cache_dir: Optional[str] = None,
        host_image_dir: Optional[str] = None,
        session: Optional[requests.Session] = None,
        max_attempts: int = 3,
    ) -> None:
        self.host_shell = host_shell
        self.cache_dir = Path(cache_dir or Config.IMAGE_CACHE_DIR)
        self.host_image_dir = host_image_dir or Config.HOST_IMAGE_DIR
        self.session = session or requests.Session()
        self.max_attempts = max_attempts

    def host_path(self, profile: OSProfile) -> str:
        return posixpath.join(self.host_image_dir, profile.vm_file)

    def ensure_image(self, profile: OSProfile) -> str:
        """Make sure the image for ``profile`` is on the host.

        Returns:
            Path of the image on the host
        """
        remote_path = self.host_path(profile)
        if self.host_shell.run(["test", "-s", remote_path]).ok:
            logger.info(f"ℹ️  Image {profile.vm_file} already on host. Skipping upload.")
            return remote_path

        local_path = self.download(profile)
        logger.info(f"📤 Uploading {local_path} → {remote_path}")
        mkdir = self.host_shell.run(["mkdir", "-p", self.host_image_dir])
        if not mkdir.ok:
            raise HostCallFailure("upload image", f"could not create {self.host_image_dir}: {mkdir.stderr}")
        self.host_shell.put_file(str(local_path), remote_path)
        return remote_path

    def download(self, profile: OSProfile) -> Path:
        """Download the image into the local cache unless already present."""
        target = self.cache_dir / profile.vm_file
        if target.is_file() and target.stat().st_size > 0:
            logger.info(f"ℹ️  Image {target} already exists locally. Skipping download.")
            return target

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        for attempt in range(1, self.max_attempts + 1):
            logger.info(f"⬇️  Downloading {profile.vm_url} (attempt {attempt}/{self.max_attempts})")
            try:
                with self.session.get(profile.vm_url, stream=True, timeout=30) as response:
                    response.raise_for_status()
                    with open(partial, "wb") as image_file:
                        for chunk in response.iter_content(chunk_size=8192):
                            if chunk:
                                image_file.write(chunk)
                os.replace(partial, target)
                logger.info(f"✅ Downloaded {target}")
                return target
            except (requests.exceptions.RequestException, OSError) as e:
                logger.warning(f"⚠️  Download failed: {e}")
                if partial.exists():
                    partial.unlink()
                if attempt < self.max_attempts:
                    time.sleep(attempt * 5)

        raise ImageDownloadError(f"Failed to download {profile.vm_url} after {self.max_attempts} attempts")
