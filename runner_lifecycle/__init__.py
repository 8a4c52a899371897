"""
Runner Lifecycle Package

Registration, supervision and workspace management for GitHub Actions
self-hosted runners run as system services.
"""

__version__ = '2.0.0'

from .config import (
    CredentialKind,
    IdentityScope,
    ManagerSettings,
    NodeRuntime,
    RunnerDefinition,
    load_definitions,
)
from .credentials import CredentialResolver, RegistrationToken
from .errors import (
    ConfigError,
    ConfigureError,
    CredentialError,
    DuplicateNameError,
    ProcessError,
    RunnerLifecycleError,
    WorkspaceError,
)
from .github_api import GitHubAPI
from .manager import RunnerManager, RunnerOutcome
from .registration import RegistrationStateTracker
from .supervisor import RunnerProcessState, RunnerSupervisor, RunResult
from .workspace import WorkspaceManager, WorkspacePaths

__all__ = [
    'CredentialKind',
    'IdentityScope',
    'ManagerSettings',
    'NodeRuntime',
    'RunnerDefinition',
    'load_definitions',
    'CredentialResolver',
    'RegistrationToken',
    'ConfigError',
    'ConfigureError',
    'CredentialError',
    'DuplicateNameError',
    'ProcessError',
    'RunnerLifecycleError',
    'WorkspaceError',
    'GitHubAPI',
    'RunnerManager',
    'RunnerOutcome',
    'RegistrationStateTracker',
    'RunnerProcessState',
    'RunnerSupervisor',
    'RunResult',
    'WorkspaceManager',
    'WorkspacePaths',
]
