from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional


@dataclass(frozen=True)
class Manifest:
    primary_name: str
    primary_content: str
    lockfile_name: str
    lockfile_content: Optional[str] = None

    @property
    def has_lockfile(self) -> bool:
        return bool(self.lockfile_content)

    def files(self) -> Dict[str, str]:
        """Map of file name to content for every descriptor that was supplied."""
        files = {self.primary_name: self.primary_content}
        if self.has_lockfile:
            files[self.lockfile_name] = self.lockfile_content
        return files


@dataclass
class InstallationResult:
    success: bool
    output_dir: Optional[Path] = None
    error_message: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ArchiveResponse:
    filename: str
    body: Iterator[bytes]
    media_type: str = "application/zip"
