"""
Runner Manager Module

Reconciles a set of runner definitions: each enabled runner gets its own
workspace, registration tracker and supervisor, and runs in its own
thread so one runner's failure never affects another.
"""

import logging
import signal
import threading
from collections import Counter
from typing import Dict, Iterable, List, Optional

from .config import IdentityScope, ManagerSettings, RunnerDefinition
from .credentials import CredentialResolver
from .errors import DuplicateNameError, RunnerLifecycleError
from .github_api import GitHubAPI
from .registration import RegistrationStateTracker
from .service import render_launchd, render_plist
from .supervisor import RunnerSupervisor, RunResult
from .workspace import WorkspaceManager, WorkspacePaths


def check_unique_names(definitions: Iterable[RunnerDefinition]):
    """
    Raises:
        DuplicateNameError: If two definitions share a name
    """
    counts = Counter(d.name for d in definitions)
    duplicates = [name for name, count in counts.items() if count > 1]
    if duplicates:
        raise DuplicateNameError(duplicates)


class RunnerOutcome:
    """Result of reconciling one runner"""

    def __init__(self, name: str, result: Optional[RunResult] = None,
                 error: Optional[BaseException] = None):
        self.name = name
        self.result = result
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None and self.result.clean

    def __repr__(self):
        return f"RunnerOutcome(name={self.name!r}, result={self.result!r}, error={self.error!r})"


class RunnerManager:
    """Manage multiple runners and lifecycle"""

    def __init__(self, settings: ManagerSettings, definitions: List[RunnerDefinition],
                 github_api: Optional[GitHubAPI] = None, logger: Optional[logging.Logger] = None):
        """
        Initialize runner manager

        Args:
            settings: ManagerSettings instance
            definitions: Runner definitions to manage
            github_api: GitHubAPI instance (created from settings if omitted)
            logger: Logger instance (configured from settings if omitted)
        """
        self.settings = settings
        self.logger = logger or self._setup_logger()
        self.github = github_api or GitHubAPI(settings.api_url, settings.api_timeout, self.logger)
        self.credentials = CredentialResolver(self.github, self.logger)
        self.workspace = WorkspaceManager(settings, self.logger)
        self.definitions = list(definitions)
        self.supervisors: Dict[str, RunnerSupervisor] = {}
        self.shutdown_requested = False
        self.lock = threading.RLock()

    def _setup_logger(self) -> logging.Logger:
        """
        Setup logging configuration

        Returns:
            Configured logger instance
        """
        logger = logging.getLogger('runner_lifecycle')
        logger.setLevel(getattr(logging, self.settings.log_level, logging.INFO))

        if logger.handlers:
            return logger

        # Console handler
        console_handler = logging.StreamHandler()
        console_handler.setLevel(getattr(logging, self.settings.log_level, logging.INFO))
        console_formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s')
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

        # File handler
        if self.settings.log_file:
            file_handler = logging.FileHandler(self.settings.log_file)
            file_handler.setLevel(getattr(logging, self.settings.log_level, logging.INFO))
            file_formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(threadName)s - %(message)s')
            file_handler.setFormatter(file_formatter)
            logger.addHandler(file_handler)

        return logger

    def install_signal_handlers(self):
        """Stop every active runner on SIGINT/SIGTERM"""
        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGTERM, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}, initiating shutdown...")
        self.request_shutdown()

    def request_shutdown(self) -> bool:
        """Stop active runners and any runner about to start"""
        with self.lock:
            self.shutdown_requested = True
        return self.stop_runners()

    def stop_runners(self) -> bool:
        """
        Stop all active runner processes

        Returns:
            True if all stopped, False otherwise
        """
        with self.lock:
            supervisors = list(self.supervisors.values())

        success = True
        for supervisor in supervisors:
            if not supervisor.stop():
                success = False
        return success

    def get_definition(self, name: str) -> RunnerDefinition:
        check_unique_names(self.definitions)
        for definition in self.definitions:
            if definition.name == name:
                return definition
        raise KeyError(f"No runner named {name!r}")

    def _new_supervisor(self, definition: RunnerDefinition, paths: WorkspacePaths) -> RunnerSupervisor:
        tracker = RegistrationStateTracker(paths.state_dir, self.logger)
        return RunnerSupervisor(definition, paths, tracker, self.workspace, self.settings, self.logger)

    def _run_cycle(self, definition: RunnerDefinition) -> RunResult:
        """Prepare the workspace and run the agent once"""
        paths = self.workspace.prepare(definition, definition.identity)
        supervisor = self._new_supervisor(definition, paths)
        with self.lock:
            self.supervisors[definition.name] = supervisor
            # A shutdown signalled before registration above never reached this supervisor
            if self.shutdown_requested:
                supervisor.stop()
        try:
            return supervisor.start(self.credentials)
        finally:
            with self.lock:
                self.supervisors.pop(definition.name, None)

    def _reconcile_runner(self, definition: RunnerDefinition, outcomes: Dict[str, RunnerOutcome]):
        try:
            outcome = RunnerOutcome(definition.name, result=self._run_cycle(definition))
            self.logger.info(f"[{definition.name}] Finished: {outcome.result.state.value}")
        except RunnerLifecycleError as e:
            self.logger.error(f"[{definition.name}] {e}")
            outcome = RunnerOutcome(definition.name, error=e)
        except Exception as e:
            # Unexpected errors stay with the runner that raised them
            self.logger.error(f"[{definition.name}] Unexpected error: {e}", exc_info=True)
            outcome = RunnerOutcome(definition.name, error=e)

        with self.lock:
            outcomes[definition.name] = outcome

    def reconcile(self, definitions: Optional[List[RunnerDefinition]] = None) -> Dict[str, RunnerOutcome]:
        """
        Run every enabled runner once, concurrently

        Args:
            definitions: Definitions to reconcile (defaults to the manager's own)

        Returns:
            Outcome per runner name; disabled runners are absent

        Raises:
            DuplicateNameError: Before anything starts, if names collide
        """
        definitions = self.definitions if definitions is None else list(definitions)
        check_unique_names(definitions)

        enabled = [d for d in definitions if d.enable]
        for definition in definitions:
            if not definition.enable:
                self.logger.info(f"[{definition.name}] Disabled, skipping")

        shared = [d.name for d in enabled if d.identity.is_shared]
        if len(shared) > 1:
            self.logger.warning(f"Runners {', '.join(shared)} share the identity "
                                f"{IdentityScope.SHARED_USER} and can access each other's state; "
                                f"assign user/group per runner to isolate them")

        self.logger.info(f"Reconciling {len(enabled)} runner(s)...")

        outcomes: Dict[str, RunnerOutcome] = {}
        threads = []
        for definition in enabled:
            if self.shutdown_requested:
                break
            thread = threading.Thread(
                target=self._reconcile_runner,
                args=(definition, outcomes),
                name=f"runner-{definition.name}",
                daemon=True
            )
            thread.start()
            threads.append(thread)

        for thread in threads:
            thread.join()

        failed = [name for name, outcome in outcomes.items() if not outcome.ok]
        if failed:
            self.logger.warning(f"Runner(s) with problems: {', '.join(sorted(failed))}")
        return outcomes

    def run_one(self, name: str, loop: bool = False) -> RunResult:
        """
        Run a single runner, as one service invocation does

        Args:
            name: Runner name
            loop: Restart ephemeral runners in-process after each completed job
                  instead of leaving that to the service supervisor

        Raises:
            KeyError: If no runner has that name
            RunnerLifecycleError: If the cycle fails
        """
        definition = self.get_definition(name)
        while True:
            result = self._run_cycle(definition)
            if not (loop and result.restart_requested) or self.shutdown_requested:
                return result
            self.logger.info(f"[{name}] Restarting for a fresh registration")

    def deregister(self, name: str):
        """Remove a runner's registration and local state"""
        definition = self.get_definition(name)
        paths = self.workspace.paths_for(definition)
        self._new_supervisor(definition, paths).deregister(self.credentials)

    def render_services(self, python: Optional[str] = None) -> Dict[str, bytes]:
        """launchd plist per enabled runner"""
        check_unique_names(self.definitions)
        services = {}
        for definition in self.definitions:
            if not definition.enable:
                continue
            job = render_launchd(definition, self.settings, definition.identity,
                                 self.workspace.paths_for(definition), python)
            services[job['Label']] = render_plist(job)
        return services

    def get_status(self) -> Dict:
        """
        Get status of all runners

        Returns:
            Dictionary with manager and runner status
        """
        runners = []
        for definition in self.definitions:
            supervisor = self._new_supervisor(definition, self.workspace.paths_for(definition))
            status = supervisor.get_status()
            status['enabled'] = definition.enable
            status['identity'] = f"{definition.identity.user}:{definition.identity.group} ({definition.identity.kind})"
            runners.append(status)

        return {
            'manager': {
                'runner_count': len(self.definitions),
                'state_dir': str(self.settings.state_dir),
                'shutdown_requested': self.shutdown_requested
            },
            'runners': runners
        }

    def print_status(self):
        """Print formatted status information"""
        status = self.get_status()

        print("\n" + "=" * 70)
        print("GitHub Actions Runner Lifecycle - Status")
        print("=" * 70)
        print(f"\nRunner Count: {status['manager']['runner_count']}")
        print(f"State Directory: {status['manager']['state_dir']}")

        print("\nRunners:")
        print("-" * 70)
        for runner_status in status['runners']:
            print(f"\n  Name: {runner_status['name']}")
            print(f"  Enabled: {runner_status['enabled']}")
            print(f"  State: {runner_status['state']}")
            print(f"  PID: {runner_status['pid'] or 'N/A'}")
            print(f"  URL: {runner_status['url']}")
            print(f"  Labels: {', '.join(runner_status['labels'])}")
            print(f"  Ephemeral: {runner_status['ephemeral']}")
            print(f"  Identity: {runner_status['identity']}")

        print("\n" + "=" * 70 + "\n")
