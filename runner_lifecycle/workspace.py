"""
Workspace Module

Prepares the per-runner work, state and log directories.
"""

import logging
import os
import shutil
from pathlib import Path

from .config import IdentityScope, ManagerSettings, RunnerDefinition, runner_name_problem
from .errors import WorkspaceError

STATE_DIR_MODE = 0o700
LOG_DIR_MODE = 0o750


class WorkspacePaths:
    """Directories owned by one runner"""

    def __init__(self, work_dir: Path, state_dir: Path, log_dir: Path):
        self.work_dir = work_dir
        self.state_dir = state_dir
        self.log_dir = log_dir

    def __repr__(self):
        return f"WorkspacePaths(work={self.work_dir}, state={self.state_dir}, log={self.log_dir})"


def empty_directory(path: Path):
    """Remove everything inside ``path`` but keep the directory itself"""
    for entry in path.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


class WorkspaceManager:
    """Create and clean runner directories"""

    def __init__(self, settings: ManagerSettings, logger: logging.Logger):
        """
        Initialize workspace manager

        Args:
            settings: ManagerSettings with the state and log roots
            logger: Logger instance
        """
        self.settings = settings
        self.logger = logger

    def paths_for(self, definition: RunnerDefinition) -> WorkspacePaths:
        """
        Directories for a runner, without touching the filesystem

        Raises:
            WorkspaceError: If the name would not stay inside the state and log roots
        """
        problem = runner_name_problem(definition.name)
        if problem:
            raise WorkspaceError(f"Invalid runner name {definition.name!r}: {problem}")
        work_dir = definition.work_dir or self.settings.default_work_dir(definition.name)
        return WorkspacePaths(
            work_dir=Path(work_dir),
            state_dir=self.settings.runner_state_dir(definition.name),
            log_dir=self.settings.runner_log_dir(definition.name),
        )

    def prepare(self, definition: RunnerDefinition, identity: IdentityScope) -> WorkspacePaths:
        """
        Prepare a runner's directories before the agent starts

        The work directory is emptied on every call, whether or not the
        runner is ephemeral. State and log directories are created if
        missing and never emptied here.

        Raises:
            WorkspaceError: On permission or I/O failures
        """
        paths = self.paths_for(definition)

        try:
            self._ensure_dir(paths.state_dir, STATE_DIR_MODE, identity)
            self._ensure_dir(paths.log_dir, LOG_DIR_MODE, identity)

            if paths.work_dir.exists():
                self.logger.info(f"[{definition.name}] Cleaning work directory {paths.work_dir}")
                empty_directory(paths.work_dir)
            else:
                paths.work_dir.mkdir(parents=True)
            self._chown(paths.work_dir, identity)
        except OSError as e:
            raise WorkspaceError(f"[{definition.name}] Failed to prepare workspace: {e}") from e

        return paths

    def wipe_state(self, paths: WorkspacePaths):
        """Empty a runner's state directory, discarding its local registration"""
        if not paths.state_dir.exists():
            return
        self.logger.info(f"Wiping state directory {paths.state_dir}")
        try:
            empty_directory(paths.state_dir)
        except OSError as e:
            raise WorkspaceError(f"Failed to wipe state directory {paths.state_dir}: {e}") from e

    def _ensure_dir(self, path: Path, mode: int, identity: IdentityScope):
        if not path.exists():
            self.logger.debug(f"Creating {path}")
            path.mkdir(parents=True)
            os.chmod(path, mode)
            self._chown(path, identity)

    def _chown(self, path: Path, identity: IdentityScope):
        # Ownership can only be handed over when running as root
        if os.geteuid() != 0:
            return
        uid, gid = identity.resolve_ids()
        if uid is None and gid is None:
            self.logger.warning(f"Identity {identity.user}:{identity.group} unknown on this host, "
                                f"leaving {path} owned by root")
            return
        os.chown(path, -1 if uid is None else uid, -1 if gid is None else gid)
