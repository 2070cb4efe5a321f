"""Workspace and mount management for one provisioning run.

The coordinator owns a private directory tree under the workspace root and
every mount it makes there. Mounts are tracked on a stack so teardown can
release them in reverse order, whatever stage the run stopped at.

Teardown policy:
    - ``sync`` before anything is unmounted
    - each mount gets up to three ``umount`` attempts, then ``umount -l``
    - a mount that will not go is reported and skipped, never fatal
    - only directories that are no longer mount points are removed
"""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import Iterable, Optional, Sequence

from live_usb_maker.domain.models import WorkspaceLayout
from live_usb_maker.logging import LoggerFactory

from .command_runners import run_command
from .devices import active_mountpoints, is_mountpoint_active
from .exceptions import MountError, WorkspaceConflictError


log = LoggerFactory.for_mount()

UNMOUNT_ATTEMPTS = 3
UNMOUNT_RETRY_DELAY = 1.0


class MountCoordinator:
    """Creates the workspace, mounts into it and tears it down again."""

    def __init__(self, layout: WorkspaceLayout, encrypt: bool = False):
        self.layout = layout
        self.encrypt = encrypt
        self._mounts: list[Path] = []
        self._created: list[Path] = []

    @property
    def owned_paths(self) -> list[Path]:
        return self.layout.paths(self.encrypt)

    @property
    def mounts(self) -> list[Path]:
        return list(self._mounts)

    @property
    def has_state(self) -> bool:
        """True while this run still owns a mount or a directory."""
        return bool(self._mounts or self._created)

    def check_conflicts(self) -> None:
        """Raise WorkspaceConflictError if any owned path is already in use."""
        mounted = active_mountpoints()
        for path in self.owned_paths:
            if str(path) in mounted:
                raise WorkspaceConflictError(str(path), "already a mount point")
            if path.exists():
                raise WorkspaceConflictError(
                    str(path), "already exists (left over from an earlier run?)"
                )

    def create(self) -> None:
        """Create the workspace root (0700) and its mount point directories."""
        for path in self.owned_paths:
            try:
                path.mkdir(mode=0o700, parents=path == self.layout.root)
            except FileExistsError as error:
                raise WorkspaceConflictError(str(path), "already exists") from error
            self._created.append(path)
        log.debug(f"Workspace created at {self.layout.root}")

    def mount(
        self,
        source: str,
        target: Path,
        fstype: Optional[str] = None,
        options: Sequence[str] = (),
    ) -> None:
        """Mount ``source`` at ``target`` and remember it for teardown.

        Raises:
            MountError: If mount exits non-zero or cannot be started
        """
        command = ["mount"]
        if fstype:
            command.extend(["-t", fstype])
        if options:
            command.extend(["-o", ",".join(options)])
        command.extend([str(source), str(target)])
        self._run_mount(command, str(source), target)

    def bind(self, source: Path, target: Path) -> None:
        self._run_mount(["mount", "--bind", str(source), str(target)], str(source), target)

    def mount_image(self, image_path: Path) -> None:
        """Loop-mount the source image read-only at the image mount point."""
        self.mount(str(image_path), self.layout.image, options=("loop", "ro"))

    def mount_partitions(self, live: str, boot: str, persistence: str) -> None:
        self.mount(live, self.layout.live)
        self.mount(boot, self.layout.boot)
        self.mount(persistence, self.layout.persistence)

    def _run_mount(self, command: list[str], source: str, target: Path) -> None:
        try:
            result = run_command(command, check=False)
        except OSError as error:
            raise MountError(source, str(target), str(error)) from error
        if result.returncode != 0:
            reason = (result.stderr or "").strip() or f"rc={result.returncode}"
            raise MountError(source, str(target), reason)
        self._mounts.append(target)
        log.debug(f"Mounted {source} at {target}")

    def unmount(self, target: Path) -> bool:
        """Unmount ``target``, retrying, then lazily. Returns True when released."""
        for attempt in range(1, UNMOUNT_ATTEMPTS + 1):
            if self._umount(["umount", str(target)]):
                self._forget(target)
                return True
            if not is_mountpoint_active(target):
                self._forget(target)
                return True
            log.debug(
                f"umount {target} failed (attempt {attempt}/{UNMOUNT_ATTEMPTS})"
            )
            if attempt < UNMOUNT_ATTEMPTS:
                time.sleep(UNMOUNT_RETRY_DELAY)
        log.warning(f"Falling back to lazy unmount of {target}")
        if self._umount(["umount", "-l", str(target)]):
            self._forget(target)
            return True
        log.error(f"Could not unmount {target}")
        return False

    def _umount(self, command: list[str]) -> bool:
        try:
            result = run_command(command, check=False, log_output=False)
        except OSError as error:
            log.debug(f"{' '.join(command)} could not run: {error}")
            return False
        return result.returncode == 0

    def _forget(self, target: Path) -> None:
        if target in self._mounts:
            # Remove the most recent entry for this target
            index = len(self._mounts) - 1 - self._mounts[::-1].index(target)
            del self._mounts[index]

    def release(self, targets: Iterable[Path]) -> list[str]:
        """Unmount a subset of mounts; returns those still held."""
        unreleased = []
        for target in targets:
            if target in self._mounts and not self.unmount(target):
                unreleased.append(str(target))
        return unreleased

    def sync(self) -> None:
        try:
            run_command(["sync"], check=False, log_command=False)
        except (OSError, subprocess.SubprocessError) as error:
            log.warning(f"sync failed: {error}")

    def teardown(self) -> list[str]:
        """Flush, unmount everything this run mounted, remove its directories.

        Safe to call more than once. Returns the mount points that could not
        be released; their directories are left in place.
        """
        if not self._mounts and not self._created:
            return []
        self.sync()
        unreleased = []
        for target in reversed(list(self._mounts)):
            if not self.unmount(target):
                unreleased.append(str(target))
        held = {Path(path) for path in unreleased}
        # Deepest paths first so the root goes last
        for path in sorted(self._created, key=lambda p: len(p.parts), reverse=True):
            if path in held or any(h.is_relative_to(path) for h in held):
                continue
            try:
                os.rmdir(path)
            except FileNotFoundError:
                pass
            except OSError as error:
                log.warning(f"Could not remove workspace directory {path}: {error}")
                continue
            self._created.remove(path)
        if unreleased:
            log.error(f"Mounts left behind: {', '.join(unreleased)}")
        else:
            log.debug(f"Workspace {self.layout.root} released")
        return unreleased
