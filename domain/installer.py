from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional
import logging
import os
import subprocess
import tempfile

from application.dtos import InstallationResult, Manifest
from domain.constants import INSTALL_TIMEOUT, MAX_STDERR_BYTES

logger = logging.getLogger(__name__)


class DependencyInstaller(ABC):
    """Abstract base class for dependency installers."""

    def __init__(
        self,
        custom_args: Optional[List[str]] = None,
        timeout: Optional[float] = INSTALL_TIMEOUT,
        max_stderr_bytes: int = MAX_STDERR_BYTES
    ):
        """
        Args:
            custom_args: Extra arguments appended to every install command
            timeout: Seconds before the child process is killed, None to wait forever
            max_stderr_bytes: How much of the end of stderr is kept for diagnostics
        """
        self.custom_args = custom_args or []
        self.timeout = timeout
        self.max_stderr_bytes = max_stderr_bytes

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the short name of the manager (e.g., 'pip', 'npm')."""
        pass

    @property
    @abstractmethod
    def output_folder_name(self) -> str:
        """Return the name of the output folder (e.g., 'site-packages', 'node_modules')."""
        pass

    @property
    @abstractmethod
    def lockfile_name(self) -> str:
        """Return the name of the lock/constraints file for this manager."""
        pass

    @property
    @abstractmethod
    def manifest_name(self) -> str:
        """Return the name of the manifest file for this manager."""
        pass

    @property
    @abstractmethod
    def archive_name(self) -> str:
        """Return the default file name of the archive sent to clients."""
        pass

    @abstractmethod
    def build_command(self, has_lockfile: bool) -> List[str]:
        """Return the command line; a lockfile selects the reproducible mode."""
        pass

    def build_env(self) -> Optional[Dict[str, str]]:
        """Return the child environment, or None to inherit ours."""
        return None

    def install(self, work_dir: Path, manifest: Manifest) -> InstallationResult:
        """Write the manifest into work_dir and run the installer there."""
        try:
            for filename, content in manifest.files().items():
                (work_dir / filename).write_text(content, encoding="utf-8")
        except OSError as e:
            return InstallationResult(
                success=False,
                error_message=f"Failed to write manifest files: {e}",
                reason="write_failed"
            )

        cmd = self.build_command(manifest.has_lockfile)
        cmd.extend(self.custom_args)

        return self._run(cmd, work_dir)

    def _run(self, cmd: List[str], work_dir: Path) -> InstallationResult:
        logger.info("Running %s in %s", " ".join(cmd), work_dir)

        with tempfile.TemporaryFile() as stderr_file:
            try:
                result = subprocess.run(
                    cmd,
                    cwd=str(work_dir),
                    env=self.build_env(),
                    stdout=subprocess.DEVNULL,
                    stderr=stderr_file,
                    timeout=self.timeout
                )
            except subprocess.TimeoutExpired:
                return InstallationResult(
                    success=False,
                    error_message=f"{self.name} install timed out after {self.timeout} seconds\n"
                                  f"{self._read_tail(stderr_file)}",
                    reason="timeout"
                )
            except FileNotFoundError:
                return InstallationResult(
                    success=False,
                    error_message=f"{self.name} executable not found: {cmd[0]}",
                    reason="not_found"
                )

            if result.returncode != 0:
                stderr = self._read_tail(stderr_file)
                logger.warning("%s install failed in %s. Stderr: %s", self.name, work_dir, stderr)
                return InstallationResult(
                    success=False,
                    error_message=f"{self.name} install failed with exit code {result.returncode}\n"
                                  f"Stderr: {stderr}",
                    reason="tool_failed"
                )

        output_dir = work_dir / self.output_folder_name
        if not output_dir.is_dir():
            return InstallationResult(
                success=False,
                error_message=f"{self.name} exited successfully but did not produce "
                              f"{self.output_folder_name}",
                reason="missing_output"
            )

        logger.info("%s install completed successfully in %s", self.name, work_dir)
        return InstallationResult(success=True, output_dir=output_dir)

    def _read_tail(self, stderr_file) -> str:
        """Read at most max_stderr_bytes from the end of the captured stderr."""
        size = stderr_file.seek(0, os.SEEK_END)
        stderr_file.seek(max(0, size - self.max_stderr_bytes))
        return stderr_file.read().decode("utf-8", errors="replace")


class PipInstaller(DependencyInstaller):
    """Installer for pip requirements into a target directory."""

    def __init__(self, executable: str = "pip", **kwargs):
        super().__init__(**kwargs)
        self.executable = executable

    def build_command(self, has_lockfile: bool) -> List[str]:
        cmd = [
            self.executable, "install", "--no-input",
            "-r", self.manifest_name,
            "--target", self.output_folder_name
        ]
        if has_lockfile:
            # Constraints pin every transitive version
            cmd.extend(["-c", self.lockfile_name])
        return cmd

    @property
    def name(self) -> str:
        return "pip"

    @property
    def output_folder_name(self) -> str:
        return "site-packages"

    @property
    def lockfile_name(self) -> str:
        return "constraints.txt"

    @property
    def manifest_name(self) -> str:
        return "requirements.txt"

    @property
    def archive_name(self) -> str:
        return "python_packages.zip"


class NpmInstaller(DependencyInstaller):
    """Installer for npm packages."""

    def __init__(self, executable: str = "npm", **kwargs):
        super().__init__(**kwargs)
        self.executable = executable

    def build_command(self, has_lockfile: bool) -> List[str]:
        if has_lockfile:
            # Use npm ci when lockfile is present
            return [self.executable, "ci", "--ignore-scripts", "--no-audit", "--no-fund"]
        return [self.executable, "install", "--ignore-scripts", "--no-audit", "--no-fund"]

    def build_env(self) -> Optional[Dict[str, str]]:
        env = os.environ.copy()
        env["NODE_ENV"] = "production"
        return env

    @property
    def name(self) -> str:
        return "npm"

    @property
    def output_folder_name(self) -> str:
        return "node_modules"

    @property
    def lockfile_name(self) -> str:
        return "package-lock.json"

    @property
    def manifest_name(self) -> str:
        return "package.json"

    @property
    def archive_name(self) -> str:
        return "node_modules.zip"


class InstallerFactory:
    """Factory for creating dependency installers."""

    installers = {
        "pip": PipInstaller,
        "npm": NpmInstaller,
    }

    def get_installer(self, manager: str, **kwargs) -> DependencyInstaller:
        """Create and return the installer for the given manager."""
        installer_class = self.installers.get(manager)
        if installer_class is None:
            raise ValueError(f"Unsupported manager: {manager}")
        return installer_class(**kwargs)
