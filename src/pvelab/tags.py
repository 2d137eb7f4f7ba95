import logging
from typing import Any, Iterable

from pvelab.exceptions import PvelabError
from pvelab.models import TagSet

logger = logging.getLogger(__name__)


class TagLedger:
    """Maintains the tag set on a VM.

    Tag writes are informational: failures are logged as warnings and
    reported through the return value, never raised.
    """

    def __init__(self, client: Any) -> None:
        self.client = client

    def current(self, vmid: int) -> TagSet:
        return TagSet.parse(self.client.get_config(vmid).get("tags"))

    def set_all(self, vmid: int, tags: Iterable[str]) -> bool:
        """Replace the tag set. No write happens when it already matches.

        Returns:
            True if the VM carries exactly these tags afterwards
        """
        target = TagSet(tags)
        try:
            current = self.current(vmid)
        except PvelabError as e:
            logger.warning(f"⚠️  Could not read tags of VM {vmid}: {e}")
            return False

        if current == target:
            logger.info(f"ℹ️  VM {vmid} tags already set: {target.render()}")
            return True
        return self._write(vmid, target)

    def add_one(self, vmid: int, tag: str) -> bool:
        """Add a single tag, preserving existing ones.

        Returns:
            True if the VM carries the tag afterwards
        """
        try:
            current = self.current(vmid)
        except PvelabError as e:
            logger.warning(f"⚠️  Could not read tags of VM {vmid}: {e}")
            return False

        if not current.add(tag):
            logger.info(f"ℹ️  VM {vmid} already tagged '{tag}'")
            return True
        return self._write(vmid, current)

    def _write(self, vmid: int, tags: TagSet) -> bool:
        try:
            self.client.configure(vmid, tags=tags.render())
        except PvelabError as e:
            logger.warning(f"⚠️  Failed to set tags on VM {vmid}: {e}")
            return False
        logger.info(f"🏷️  VM {vmid} tags: {tags.render()}")
        return True
