"""
Bind mount of the download directory.

The daemon only writes below the path it was told about at install time, so
the real download directory is bind-mounted there before the daemon starts
and unmounted after it stops.
"""

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

MOUNT_TIMEOUT_SECONDS = 30


class MountError(Exception):
    """Raised when the bind mount cannot be established."""
    pass


class MountBinder:
    """Wraps mount(8)/umount(8) for a single bind mount."""

    def __init__(self, mount_cmd: str = "mount", umount_cmd: str = "umount"):
        self._mount_cmd = mount_cmd
        self._umount_cmd = umount_cmd

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        logger.debug("Command: %s", " ".join(cmd))
        return subprocess.run(
            cmd, capture_output=True, text=True, timeout=MOUNT_TIMEOUT_SECONDS,
        )

    def _umount(self, target_dir: Path) -> subprocess.CompletedProcess:
        return self._run([self._umount_cmd, str(target_dir)])

    def bind(self, source_dir: Path, target_dir: Path) -> None:
        """
        Bind-mount source_dir onto target_dir.

        Any stale mount at target_dir is removed first; failing to remove it
        is not an error. Raises MountError if the bind itself fails.
        """
        target_dir = Path(target_dir)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MountError(f"Cannot create mount point {target_dir}: {e}") from e

        try:
            self._umount(target_dir)
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Pre-mount cleanup of %s skipped: %s", target_dir, e)

        try:
            result = self._run([self._mount_cmd, "--bind", str(source_dir), str(target_dir)])
        except (OSError, subprocess.SubprocessError) as e:
            raise MountError(f"Mount {source_dir} to {target_dir} failed: {e}") from e
        if result.returncode != 0:
            raise MountError(
                f"Mount {source_dir} to {target_dir} failed "
                f"(exit {result.returncode}): {result.stderr.strip()}"
            )
        logger.info("Mount %s to %s succeeded", source_dir, target_dir)

    def unbind(self, target_dir: Path) -> bool:
        """Unmount target_dir. Failures are logged, never raised."""
        try:
            result = self._umount(Path(target_dir))
        except (OSError, subprocess.SubprocessError) as e:
            logger.error("Unmount %s failed: %s", target_dir, e)
            return False
        if result.returncode != 0:
            logger.error("Unmount %s failed: %s", target_dir, result.stderr.strip())
            return False
        logger.info("Unmount %s succeeded", target_dir)
        return True
