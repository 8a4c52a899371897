"""
Runner Supervisor Module

Manages one runner's agent process: optional re-registration, launch,
graceful stop, and interpretation of how the agent exited.
"""

import logging
import os
import shutil
import subprocess
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from .config import ManagerSettings, RunnerDefinition
from .credentials import CredentialResolver, RegistrationToken
from .errors import ConfigureError, ProcessError, RunnerLifecycleError
from .registration import RUNNER_ARTIFACT, RegistrationStateTracker
from .workspace import WorkspaceManager, WorkspacePaths

AGENT_BINARY = 'Runner.Listener'
PID_FILE = '.agent.pid'

# Runner.Listener exits 0 after an ephemeral runner has finished its job
# and removed its own registration
EXIT_SUCCESS = 0


class RunnerProcessState(Enum):
    UNREGISTERED = 'unregistered'
    REGISTERING = 'registering'
    IDLE = 'idle'
    RUNNING = 'running'
    DEREGISTERING = 'deregistering'
    FAILED = 'failed'


class RunResult:
    """How one start of the agent ended"""

    def __init__(self, state: RunnerProcessState, returncode: Optional[int] = None,
                 restart_requested: bool = False, stopped: bool = False):
        self.state = state
        self.returncode = returncode
        # Ephemeral job done: the caller should start again for a fresh registration
        self.restart_requested = restart_requested
        self.stopped = stopped

    @property
    def clean(self) -> bool:
        return self.state != RunnerProcessState.FAILED

    def __repr__(self):
        return (f"RunResult(state={self.state.value}, returncode={self.returncode}, "
                f"restart_requested={self.restart_requested}, stopped={self.stopped})")


def agent_executable(package: str) -> Path:
    """
    Locate the agent binary

    ``package`` may be an installation directory (containing
    bin/Runner.Listener), the executable itself, or empty to search PATH.
    """
    if not package:
        found = shutil.which(AGENT_BINARY)
        if not found:
            raise ProcessError(f"{AGENT_BINARY} not found on PATH; set 'package' or RUNNER_PACKAGE")
        return Path(found)
    path = Path(package)
    if path.is_dir():
        return path / 'bin' / AGENT_BINARY
    return path


def build_environment(definition: RunnerDefinition, paths: WorkspacePaths,
                      base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Environment for the agent process

    Extra variables are layered over ``base`` (the current environment by
    default), extra package bin directories are prepended to PATH, and the
    variables identifying the runner are set last so nothing overrides them.
    """
    env = dict(os.environ if base is None else base)
    env.update(definition.extra_environment)

    bin_dirs = [str(package / 'bin') for package in definition.extra_packages]
    if bin_dirs:
        current = env.get('PATH', '')
        env['PATH'] = os.pathsep.join(bin_dirs + ([current] if current else []))

    env['RUNNER_ROOT'] = str(paths.state_dir)
    env['RUNNER_NAME'] = definition.name
    return env


class RunnerSupervisor:
    """Manage one runner's agent process"""

    def __init__(self, definition: RunnerDefinition, paths: WorkspacePaths,
                 tracker: RegistrationStateTracker, workspace: WorkspaceManager,
                 settings: ManagerSettings, logger: logging.Logger):
        """
        Initialize supervisor

        Args:
            definition: RunnerDefinition being supervised
            paths: Prepared WorkspacePaths for the runner
            tracker: RegistrationStateTracker for the runner's state directory
            workspace: WorkspaceManager used for state wipes
            settings: ManagerSettings with timeouts
            logger: Logger instance
        """
        self.definition = definition
        self.paths = paths
        self.tracker = tracker
        self.workspace = workspace
        self.settings = settings
        self.logger = logger
        self.name = definition.name
        self.state = RunnerProcessState.UNREGISTERED
        self.process: Optional[subprocess.Popen] = None
        self.process_returncode: Optional[int] = None
        self._lock = threading.RLock()
        self._stop_requested = False

    def _set_state(self, state: RunnerProcessState):
        if state != self.state:
            self.logger.debug(f"[{self.name}] {self.state.value} -> {state.value}")
        self.state = state

    @property
    def pid_file(self) -> Path:
        return self.paths.state_dir / PID_FILE

    def start(self, credentials: CredentialResolver) -> RunResult:
        """
        Register the runner if needed, run the agent and wait for it to exit

        Args:
            credentials: CredentialResolver consulted only when registration is required

        Returns:
            RunResult describing the exit

        Raises:
            CredentialError, ConfigureError, ProcessError, WorkspaceError
        """
        try:
            return self._start(credentials)
        except RunnerLifecycleError:
            self._set_state(RunnerProcessState.FAILED)
            raise

    def _start(self, credentials: CredentialResolver) -> RunResult:
        agent = agent_executable(self.definition.package)
        self._check_not_running()

        if self.definition.ephemeral:
            self.logger.info(f"[{self.name}] Ephemeral runner, discarding previous registration")
            self.workspace.wipe_state(self.paths)
            self.tracker.clear()
            self._set_state(RunnerProcessState.UNREGISTERED)

        self._check_node_runtimes()

        credential_kind = credentials.credential_kind(self.definition)
        if self.tracker.registration_required(self.definition, credential_kind):
            self._set_state(RunnerProcessState.REGISTERING)
            token = credentials.resolve(self.definition)
            self.tracker.clear()
            self.tracker.discard_agent_registration()
            self._configure(agent, token)
            if self._stop_requested:
                return self._stopped_result(None)
            self.tracker.commit(self.definition, token.kind)
        else:
            self.logger.info(f"[{self.name}] Registration up to date, skipping configure")

        self._set_state(RunnerProcessState.IDLE)
        if self._stop_requested:
            return self._stopped_result(None)

        returncode = self._run_agent(agent)
        return self._interpret_exit(returncode)

    def _configure_command(self, agent: Path, token: RegistrationToken) -> List[str]:
        definition = self.definition
        cmd = [
            str(agent), 'configure',
            '--unattended',
            '--disableupdate',
            '--url', definition.url,
            '--token', token.value,
            '--name', definition.name,
            '--work', str(self.paths.work_dir),
        ]
        # The agent adds the default labels itself unless told not to
        if definition.extra_labels:
            cmd.extend(['--labels', ','.join(sorted(set(definition.extra_labels)))])
        if definition.no_default_labels:
            cmd.append('--no-default-labels')
        if definition.runner_group:
            cmd.extend(['--runnergroup', definition.runner_group])
        if definition.replace:
            cmd.append('--replace')
        if definition.ephemeral:
            cmd.append('--ephemeral')
        return cmd

    def _configure(self, agent: Path, token: RegistrationToken):
        """
        Run the agent's configure step

        Raises:
            ConfigureError: On non-zero exit or timeout, with the tool's output
        """
        cmd = self._configure_command(agent, token)
        redacted = [('***' if arg == token.value else arg) for arg in cmd]
        self.logger.info(f"[{self.name}] Registering runner")
        self.logger.debug(f"Running: {' '.join(redacted)}")

        output = self._run_step(cmd, self.settings.configure_timeout, 'Configure step')
        if self.process_returncode != 0 and not self._stop_requested:
            raise ConfigureError(f"[{self.name}] Configure step failed with exit code {self.process_returncode}",
                                 returncode=self.process_returncode, output=output)
        if not self._stop_requested:
            self.logger.info(f"[{self.name}] Runner registered successfully")

    def _run_step(self, cmd: List[str], timeout: int, what: str) -> str:
        """Run a short agent subcommand that ``stop`` can interrupt; returns combined output"""
        env = build_environment(self.definition, self.paths)
        try:
            with self._lock:
                if self._stop_requested:
                    self.process_returncode = None
                    return ''
                self.process = subprocess.Popen(
                    cmd,
                    cwd=self.paths.state_dir,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True
                )
                self._terminate_if_stopped(self.process)
        except OSError as e:
            raise ProcessError(f"[{self.name}] Failed to launch {cmd[0]}: {e}") from e

        try:
            output, _ = self.process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.process.kill()
            output, _ = self.process.communicate()
            raise ConfigureError(f"[{self.name}] {what} timed out after {timeout}s", output=output or '')
        finally:
            self.process_returncode = self.process.returncode
            with self._lock:
                self.process = None
        return output or ''

    def _check_node_runtimes(self):
        """Installation directories must ship every configured node runtime"""
        if not self.definition.package or not Path(self.definition.package).is_dir():
            return
        externals = Path(self.definition.package) / 'externals'
        missing = [r.value for r in self.definition.node_runtimes if not (externals / r.value).exists()]
        if missing:
            raise ProcessError(f"[{self.name}] Agent package lacks node runtime(s): {', '.join(missing)}")

    def _live_agent_pid(self) -> Optional[int]:
        """PID of an agent still running from a previous start, cleaning up stale pid files"""
        try:
            pid = int(self.pid_file.read_text().strip())
        except (OSError, ValueError):
            return None

        try:
            process = psutil.Process(pid)
            if process.is_running() and process.status() != psutil.STATUS_ZOMBIE:
                # PIDs get reused; only trust it if it still looks like our agent
                if '--startuptype' in process.cmdline():
                    return pid
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

        self.logger.debug(f"[{self.name}] Removing stale pid file {self.pid_file}")
        self._remove_pid_file()
        return None

    def _check_not_running(self):
        pid = self._live_agent_pid()
        if pid is not None:
            raise ProcessError(f"[{self.name}] Agent already running (PID: {pid})")

    def _remove_pid_file(self):
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass

    def _run_agent(self, agent: Path) -> Optional[int]:
        """Launch the agent and block until it exits; None if stopped before launch"""
        self.logger.info(f"Starting runner: {self.name}")
        try:
            with self._lock:
                if self._stop_requested:
                    return None
                self.process = subprocess.Popen(
                    [str(agent), 'run', '--startuptype', 'service'],
                    cwd=self.paths.state_dir,
                    env=build_environment(self.definition, self.paths)
                )
                process = self.process
                self._terminate_if_stopped(process)
        except OSError as e:
            raise ProcessError(f"[{self.name}] Failed to start agent: {e}") from e

        try:
            self.pid_file.write_text(f"{process.pid}\n")
        except OSError as e:
            process.kill()
            process.wait()
            with self._lock:
                self.process = None
            raise ProcessError(f"[{self.name}] Failed to write pid file {self.pid_file}: {e}") from e

        self._set_state(RunnerProcessState.RUNNING)
        self.logger.info(f"Runner {self.name} started (PID: {process.pid})")

        try:
            returncode = process.wait()
        finally:
            with self._lock:
                self.process = None
            self._remove_pid_file()

        self.logger.info(f"Runner {self.name} exited with code {returncode}")
        return returncode

    def _terminate_if_stopped(self, process: subprocess.Popen):
        # A signal handler on this thread can request a stop while Popen is in progress
        if self._stop_requested:
            process.terminate()

    def _stopped_result(self, returncode: Optional[int]) -> RunResult:
        self._set_state(RunnerProcessState.IDLE)
        return RunResult(self.state, returncode, stopped=True)

    def _interpret_exit(self, returncode: Optional[int]) -> RunResult:
        if self._stop_requested:
            return self._stopped_result(returncode)

        if self.definition.ephemeral:
            if returncode == EXIT_SUCCESS:
                # The agent already removed its remote registration; drop ours
                self._set_state(RunnerProcessState.DEREGISTERING)
                self.tracker.clear()
                self._set_state(RunnerProcessState.UNREGISTERED)
                self.logger.info(f"[{self.name}] Ephemeral job complete, restart requested")
                return RunResult(self.state, returncode, restart_requested=True)
            self.logger.error(f"[{self.name}] Ephemeral runner exited unexpectedly (code {returncode})")
            self._set_state(RunnerProcessState.FAILED)
            return RunResult(self.state, returncode)

        if returncode == EXIT_SUCCESS:
            self._set_state(RunnerProcessState.IDLE)
        else:
            self.logger.warning(f"Runner {self.name} stopped unexpectedly (code {returncode})")
            self._set_state(RunnerProcessState.FAILED)
        return RunResult(self.state, returncode)

    def stop(self, timeout: Optional[int] = None) -> bool:
        """
        Ask the active subprocess (configure step or agent) to terminate

        Returns:
            True if nothing is left running, False otherwise
        """
        timeout = timeout if timeout is not None else self.settings.stop_timeout

        # Set under the lock so a launch in progress either sees it or is visible here
        with self._lock:
            self._stop_requested = True
            process = self.process
        if not process or process.poll() is not None:
            return True

        self.logger.info(f"Stopping runner: {self.name}")

        try:
            process.terminate()
            process.wait(timeout=timeout)
            self.logger.info(f"Runner {self.name} stopped")
            return True
        except subprocess.TimeoutExpired:
            self.logger.warning(f"Runner {self.name} did not stop gracefully, killing...")
            process.kill()
            process.wait()
            return True
        except OSError as e:
            self.logger.error(f"Failed to stop runner: {e}")
            return False

    def deregister(self, credentials: CredentialResolver):
        """
        Remove the runner's registration and local state

        Raises:
            ProcessError: If the agent is still running
            CredentialError, ConfigureError: If the remove step cannot run or fails
        """
        self._check_not_running()
        self._set_state(RunnerProcessState.DEREGISTERING)
        self.logger.info(f"Deregistering runner: {self.name}")

        try:
            if (self.paths.state_dir / RUNNER_ARTIFACT).exists():
                agent = agent_executable(self.definition.package)
                token = credentials.resolve_removal(self.definition)
                output = self._run_step([str(agent), 'remove', '--token', token.value],
                                        self.settings.configure_timeout, 'Remove step')
                if self._stop_requested:
                    raise ProcessError(f"[{self.name}] Deregistration interrupted by stop request")
                if self.process_returncode != 0:
                    raise ConfigureError(f"[{self.name}] Remove step failed with exit code {self.process_returncode}",
                                         returncode=self.process_returncode, output=output)
            else:
                self.logger.warning(f"[{self.name}] No local registration found, only clearing state")

            self.tracker.clear()
            self.workspace.wipe_state(self.paths)
        except RunnerLifecycleError:
            self._set_state(RunnerProcessState.FAILED)
            raise

        self._set_state(RunnerProcessState.UNREGISTERED)
        self.logger.info(f"Runner {self.name} deregistered successfully")

    def is_running(self) -> bool:
        with self._lock:
            process = self.process
        return process is not None and process.poll() is None

    def get_status(self) -> Dict:
        """
        Reconstruct runner status from the filesystem and process table

        Works for runners started by another manager process too.
        """
        pid = self._live_agent_pid()
        if pid is not None:
            state = RunnerProcessState.RUNNING
        elif self.state == RunnerProcessState.FAILED:
            state = self.state
        elif self.tracker.load() is None:
            state = RunnerProcessState.UNREGISTERED
        else:
            state = RunnerProcessState.IDLE

        return {
            'name': self.name,
            'state': state.value,
            'pid': pid,
            'ephemeral': self.definition.ephemeral,
            'url': self.definition.url,
            'labels': self.definition.labels,
            'state_dir': str(self.paths.state_dir),
            'work_dir': str(self.paths.work_dir),
        }
