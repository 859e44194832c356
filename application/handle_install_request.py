import logging
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from application.dtos import ArchiveResponse, Manifest
from domain.errors import ArchiveError, InstallError, StreamingFailure
from domain.installer import DependencyInstaller
from domain.zip_util import ZipUtil
from infrastructure.workspace_manager import WorkspaceManager

logger = logging.getLogger(__name__)


class RequestState(Enum):
    DECODING = "decoding"
    WORKSPACE_ACQUIRED = "workspace_acquired"
    INSTALLING = "installing"
    ARCHIVING = "archiving"
    DONE = "done"
    FAILED = "failed"


class HandleInstallRequest:
    """Orchestrates one install request from decoded manifest to archive stream."""

    def __init__(
        self,
        workspace_manager: WorkspaceManager,
        installer: DependencyInstaller,
        zip_util: Optional[ZipUtil] = None,
        archive_name: Optional[str] = None
    ):
        self.workspace_manager = workspace_manager
        self.installer = installer
        self.zip_util = zip_util or ZipUtil()
        self.archive_name = archive_name or installer.archive_name
        self.state = RequestState.DECODING

    def handle(self, manifest: Manifest) -> ArchiveResponse:
        """
        Install the manifest and return a response whose body streams the result.

        The workspace is removed before this returns if anything fails, and
        otherwise once the body has been fully consumed or closed.

        Raises:
            ResourceError: If the workspace cannot be created
            InstallError: If the installer fails or produces no output
            ArchiveError: If archiving fails before the first chunk
        """
        try:
            work_dir = self.workspace_manager.acquire()
        except BaseException:
            self._transition(RequestState.FAILED)
            raise
        self._transition(RequestState.WORKSPACE_ACQUIRED, work_dir)

        try:
            self._transition(RequestState.INSTALLING, work_dir)
            result = self.installer.install(work_dir, manifest)
            if not result.success:
                raise InstallError(
                    result.error_message or "Installation failed",
                    reason=result.reason or "tool_failed",
                    diagnostic=result.error_message
                )

            self._transition(RequestState.ARCHIVING, work_dir)
            body = self._archive(work_dir)
            try:
                first_chunk = next(body, b"")
            except StreamingFailure as e:
                raise ArchiveError(str(e)) from e
        except BaseException:
            self._transition(RequestState.FAILED, work_dir)
            self.workspace_manager.release(work_dir)
            raise

        return ArchiveResponse(
            filename=self.archive_name,
            body=self._prepend(first_chunk, body)
        )

    def reject(self, error: Exception) -> None:
        """Record that the request body could not be decoded; nothing was acquired."""
        logger.debug("Request rejected while decoding: %s", error)
        self._transition(RequestState.FAILED)

    def _archive(self, work_dir: Path) -> Iterator[bytes]:
        """Stream the installer output, then remove the workspace however streaming ends."""
        try:
            yield from self.zip_util.stream_directory(work_dir, self.installer.output_folder_name)
            self._transition(RequestState.DONE, work_dir)
        except StreamingFailure:
            self._transition(RequestState.FAILED, work_dir)
            raise
        finally:
            self.workspace_manager.release(work_dir)

    @staticmethod
    def _prepend(first_chunk: bytes, body: Iterator[bytes]) -> Iterator[bytes]:
        try:
            if first_chunk:
                yield first_chunk
            yield from body
        finally:
            body.close()

    def _transition(self, state: RequestState, work_dir: Optional[Path] = None) -> None:
        logger.debug("Request in %s: %s -> %s", work_dir or "-", self.state.value, state.value)
        self.state = state
