import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from domain.errors import ResourceError

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """Creates and removes the per-request directories installers run in."""

    def __init__(self, root: Optional[str] = None, prefix: str = "install_work_"):
        """
        Args:
            root: Directory under which workspaces are created. None means
                the system temporary directory.
            prefix: Name prefix for every workspace directory.
        """
        self.root = root
        self.prefix = prefix

    def acquire(self) -> Path:
        """Create a fresh, empty, uniquely named workspace directory."""
        try:
            work_dir = Path(tempfile.mkdtemp(prefix=self.prefix, dir=self.root))
        except OSError as e:
            raise ResourceError(f"Failed to create workspace: {e}") from e

        logger.debug("Acquired workspace %s", work_dir)
        return work_dir

    def release(self, work_dir: Path) -> None:
        """Recursively delete a workspace. Releasing twice is harmless."""
        if not work_dir.exists():
            return

        try:
            shutil.rmtree(work_dir)
        except OSError as e:
            logger.warning("Failed to remove workspace %s: %s", work_dir, e)
            return

        logger.debug("Released workspace %s", work_dir)
