"""
Service Definition Module

Renders launchd job definitions that run one runner each through
``runner-lifecycle run``. The service supervisor owns restarts and log
redirection; this module only describes the job.
"""

import os
import plistlib
import sys
from typing import Dict, List, Optional

from .config import IdentityScope, ManagerSettings, RunnerDefinition
from .errors import ConfigError
from .workspace import WorkspacePaths

LABEL_PREFIX = 'org.github.runner'


def deep_merge(base: Dict, overrides: Dict) -> Dict:
    """Merge overrides into a copy of base; nested mappings merge, everything else replaces"""
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def service_label(definition: RunnerDefinition) -> str:
    return f"{LABEL_PREFIX}.{definition.name}"


def program_arguments(definition: RunnerDefinition, settings: ManagerSettings,
                      python: Optional[str] = None) -> List[str]:
    return [
        python or sys.executable, '-m', 'runner_lifecycle',
        '--definitions', str(settings.definitions_file.resolve()),
        'run', '--name', definition.name,
    ]


def render_launchd(definition: RunnerDefinition, settings: ManagerSettings,
                   identity: IdentityScope, paths: WorkspacePaths,
                   python: Optional[str] = None) -> Dict:
    """
    Build the launchd job for a runner

    Ephemeral runners exit 0 after their job and must be started again,
    so they are kept alive on successful exit. Other runners are kept
    alive unconditionally. The manager's effective settings travel in the
    job's environment, since launchd starts it without this working
    directory or .env file. ``serviceOverrides`` are merged last.
    """
    environment = settings.as_environment()
    if not definition.package:
        # The agent is looked up on PATH, and launchd's default PATH is minimal
        environment['PATH'] = os.environ.get('PATH', os.defpath)
    job = {
        'Label': service_label(definition),
        'ProgramArguments': program_arguments(definition, settings, python),
        'RunAtLoad': True,
        'KeepAlive': {'SuccessfulExit': True} if definition.ephemeral else True,
        'WorkingDirectory': str(paths.state_dir),
        'StandardOutPath': str(paths.log_dir / 'stdout.log'),
        'StandardErrorPath': str(paths.log_dir / 'stderr.log'),
        'UserName': identity.user,
        'GroupName': identity.group,
        'EnvironmentVariables': environment,
    }
    return deep_merge(job, definition.service_overrides)


def render_plist(job: Dict) -> bytes:
    """
    Serialise a launchd job

    Raises:
        ConfigError: If a value (typically from serviceOverrides) has no plist form
    """
    try:
        return plistlib.dumps(job, sort_keys=True)
    except (TypeError, OverflowError) as e:
        raise ConfigError([f"{job.get('Label', 'service')}: cannot render launchd job: {e}"]) from e
