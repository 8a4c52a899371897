"""
Runner Configuration Module

Handles manager settings (environment variables and .env files) and
runner definitions (YAML file).
"""

import grp
import os
import platform
import pwd
import socket
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from .errors import ConfigError


class NodeRuntime(Enum):
    """Node.js runtimes the agent can be asked to support"""

    NODE20 = 'node20'

    @classmethod
    def parse(cls, value: str) -> 'NodeRuntime':
        for runtime in cls:
            if runtime.value == value:
                return runtime
        supported = ', '.join(r.value for r in cls)
        raise ValueError(f"unsupported node runtime '{value}' (supported: {supported})")


class CredentialKind(Enum):
    """What the token file holds"""

    PAT = 'pat'
    REGISTRATION = 'registration'


TOKEN_KIND_CHOICES = ('auto', CredentialKind.PAT.value, CredentialKind.REGISTRATION.value)

# Directory under the state root holding default work directories
WORK_ROOT = '_work'


def load_env_file(env_file: Path = Path('.env')):
    """Load environment variables from .env file if it exists"""
    if env_file.exists():
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    key = key.strip()
                    value = value.strip()
                    # Environment variables take precedence over .env
                    if key and value and key not in os.environ:
                        os.environ[key] = value


def detect_architecture() -> str:
    """Detect system architecture"""
    machine = platform.machine().lower()
    if machine in ('x86_64', 'amd64'):
        return 'x64'
    elif machine in ('arm64', 'aarch64'):
        return 'arm64'
    elif machine.startswith('arm'):
        return 'arm'
    else:
        return 'x64'


def detect_os_label() -> str:
    system = platform.system()
    if system == 'Darwin':
        return 'macOS'
    return system or 'Linux'


def default_labels() -> List[str]:
    """Labels the agent assigns itself unless defaults are disabled"""
    return ['self-hosted', detect_os_label(), detect_architecture().upper()]


class ManagerSettings:
    """Manager-wide settings shared by every runner"""

    def __init__(self, env_file: Path = Path('.env')):
        """Initialize settings from environment and .env file"""
        load_env_file(env_file)

        self.definitions_file = Path(os.getenv('RUNNER_DEFINITIONS_FILE', './runners.yaml'))

        # Filesystem layout
        self.state_dir = Path(os.getenv('RUNNER_STATE_DIR', '/var/lib/github-runners'))
        self.log_dir = Path(os.getenv('RUNNER_LOG_DIR', '/var/log/github-runners'))
        self.package = os.getenv('RUNNER_PACKAGE', '')

        # GitHub
        self.api_url = os.getenv('GITHUB_API_URL', 'https://api.github.com').rstrip('/')

        # Timeouts
        self.api_timeout = self._int_setting('GITHUB_API_TIMEOUT', 30)
        self.configure_timeout = self._int_setting('RUNNER_CONFIGURE_TIMEOUT', 300)
        self.stop_timeout = self._int_setting('RUNNER_STOP_TIMEOUT', 30)

        # Logging
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        log_file = os.getenv('LOG_FILE', '').strip()
        self.log_file = Path(log_file) if log_file else None

    def as_environment(self) -> Dict[str, str]:
        """
        Effective settings as environment variables

        Lets a process started elsewhere (a launchd job, without this
        working directory or .env file) see the same settings.
        """
        env = {
            'RUNNER_STATE_DIR': str(self.state_dir.absolute()),
            'RUNNER_LOG_DIR': str(self.log_dir.absolute()),
            'GITHUB_API_URL': self.api_url,
            'LOG_LEVEL': self.log_level,
        }
        for key, value in (('GITHUB_API_TIMEOUT', self.api_timeout),
                           ('RUNNER_CONFIGURE_TIMEOUT', self.configure_timeout),
                           ('RUNNER_STOP_TIMEOUT', self.stop_timeout)):
            if value is not None:
                env[key] = str(value)
        if self.package:
            env['RUNNER_PACKAGE'] = self.package
        if self.log_file:
            env['LOG_FILE'] = str(self.log_file.absolute())
        return env

    def _int_setting(self, key: str, default: int) -> Optional[int]:
        raw = os.getenv(key, str(default))
        try:
            return int(raw)
        except ValueError:
            return None

    def validate(self) -> List[str]:
        """Validate settings and return list of errors"""
        errors = []

        for key, value in (('GITHUB_API_TIMEOUT', self.api_timeout),
                           ('RUNNER_CONFIGURE_TIMEOUT', self.configure_timeout),
                           ('RUNNER_STOP_TIMEOUT', self.stop_timeout)):
            if value is None or value <= 0:
                errors.append(f"Invalid {key}: must be a positive integer")

        if self.log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"Invalid LOG_LEVEL: {self.log_level}")

        if not self.api_url.startswith(('http://', 'https://')):
            errors.append(f"Invalid GITHUB_API_URL: {self.api_url}")

        return errors

    def runner_state_dir(self, name: str) -> Path:
        return self.state_dir / name

    def runner_log_dir(self, name: str) -> Path:
        return self.log_dir / name

    def default_work_dir(self, name: str) -> Path:
        return self.state_dir / WORK_ROOT / name


class IdentityScope:
    """
    User/group a runner executes under

    SHARED means neither user nor group was configured: every such runner
    runs as the same pool account and can read the others' state.
    EXCLUSIVE means the operator assigned an identity to this runner.
    """

    EXCLUSIVE = 'exclusive'
    SHARED = 'shared'

    SHARED_USER = '_github-runner'
    SHARED_GROUP = '_github-runner'

    def __init__(self, kind: str, user: str, group: str):
        self.kind = kind
        self.user = user
        self.group = group

    @classmethod
    def for_options(cls, user: Optional[str], group: Optional[str]) -> 'IdentityScope':
        if user is None and group is None:
            return cls(cls.SHARED, cls.SHARED_USER, cls.SHARED_GROUP)
        if group is None:
            group = primary_group(user)
        if user is None:
            user = cls.SHARED_USER
        return cls(cls.EXCLUSIVE, user, group)

    @property
    def is_shared(self) -> bool:
        return self.kind == self.SHARED

    def resolve_ids(self) -> Tuple[Optional[int], Optional[int]]:
        """Numeric uid/gid, None for accounts unknown to this host"""
        try:
            uid = pwd.getpwnam(self.user).pw_uid
        except KeyError:
            uid = None
        try:
            gid = grp.getgrnam(self.group).gr_gid
        except KeyError:
            gid = None
        return uid, gid

    def __eq__(self, other):
        if not isinstance(other, IdentityScope):
            return NotImplemented
        return (self.kind, self.user, self.group) == (other.kind, other.user, other.group)

    def __hash__(self):
        return hash((self.kind, self.user, self.group))

    def __repr__(self):
        return f"IdentityScope({self.kind}, {self.user}:{self.group})"


def primary_group(user: str) -> str:
    """Name of the user's primary group, or the user name if unknown locally"""
    try:
        gid = pwd.getpwnam(user).pw_gid
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return user


class RunnerDefinition:
    """One configured runner. Treated as immutable during a reconciliation pass."""

    def __init__(self, name: str, url: str, token_file: Path,
                 enable: bool = False,
                 token_kind: str = 'auto',
                 runner_group: Optional[str] = None,
                 extra_labels: Optional[List[str]] = None,
                 no_default_labels: bool = False,
                 replace: bool = False,
                 extra_packages: Optional[List[Path]] = None,
                 extra_environment: Optional[Dict[str, str]] = None,
                 service_overrides: Optional[Dict] = None,
                 package: str = '',
                 ephemeral: bool = False,
                 user: Optional[str] = None,
                 group: Optional[str] = None,
                 work_dir: Optional[Path] = None,
                 node_runtimes: Optional[List[NodeRuntime]] = None):
        self.name = name
        self.url = url
        self.token_file = Path(token_file)
        self.enable = enable
        self.token_kind = token_kind
        self.runner_group = runner_group
        self.extra_labels = list(extra_labels or [])
        self.no_default_labels = no_default_labels
        self.replace = replace
        self.extra_packages = [Path(p) for p in (extra_packages or [])]
        self.extra_environment = dict(extra_environment or {})
        self.service_overrides = dict(service_overrides or {})
        self.package = package
        self.ephemeral = ephemeral
        self.user = user
        self.group = group
        self.work_dir = Path(work_dir) if work_dir is not None else None
        self.node_runtimes = list(node_runtimes or [NodeRuntime.NODE20])

    @property
    def labels(self) -> List[str]:
        """Effective labels: defaults (unless disabled) plus extras, sorted and unique"""
        labels = set(self.extra_labels)
        if not self.no_default_labels:
            labels.update(default_labels())
        return sorted(labels)

    @property
    def identity(self) -> IdentityScope:
        return IdentityScope.for_options(self.user, self.group)

    def __repr__(self):
        return f"RunnerDefinition(name={self.name!r}, url={self.url!r}, ephemeral={self.ephemeral})"


def runner_name_problem(name: str) -> Optional[str]:
    """
    Why a name cannot be used as a runner name, or None if it can

    The name becomes a directory under the state and log roots, so it must
    be a single path component.
    """
    if not name.strip():
        return 'must not be empty'
    if name in ('.', '..'):
        return 'must not be a relative path component'
    if name == WORK_ROOT:
        return f"'{WORK_ROOT}' holds the default work directories"
    if any(sep in name for sep in ('/', '\\', '\0')):
        return 'must not contain path separators'
    return None


# option name -> (attribute, expected type(s))
RUNNER_OPTIONS = {
    'enable': ('enable', bool),
    'url': ('url', str),
    'tokenFile': ('token_file', str),
    'tokenKind': ('token_kind', str),
    'name': ('name', (str, type(None))),
    'runnerGroup': ('runner_group', (str, type(None))),
    'extraLabels': ('extra_labels', list),
    'noDefaultLabels': ('no_default_labels', bool),
    'replace': ('replace', bool),
    'extraPackages': ('extra_packages', list),
    'extraEnvironment': ('extra_environment', dict),
    'serviceOverrides': ('service_overrides', dict),
    'package': ('package', str),
    'ephemeral': ('ephemeral', bool),
    'user': ('user', (str, type(None))),
    'group': ('group', (str, type(None))),
    'workDir': ('work_dir', (str, type(None))),
    'nodeRuntimes': ('node_runtimes', list),
}


def parse_definition(key: str, options: Dict, settings: ManagerSettings,
                     default_name: Optional[str] = None) -> Tuple[Optional[RunnerDefinition], List[str]]:
    """
    Build a RunnerDefinition from its YAML options

    Args:
        key: Key of the definition in the ``runners`` mapping
        options: Option mapping (camelCase keys)
        settings: ManagerSettings supplying defaults
        default_name: Name used when the ``name`` option is absent (defaults to key)

    Returns:
        (definition, problems); definition is None when problems is non-empty
    """
    problems = []
    where = f"runners.{key}"

    if not isinstance(options, dict):
        return None, [f"{where}: expected a mapping of options"]

    kwargs = {}
    for option, value in options.items():
        if option not in RUNNER_OPTIONS:
            problems.append(f"{where}: unknown option '{option}'")
            continue
        attribute, expected = RUNNER_OPTIONS[option]
        if not isinstance(value, expected):
            problems.append(f"{where}.{option}: unexpected type {type(value).__name__}")
            continue
        kwargs[attribute] = value

    for required in ('url', 'tokenFile'):
        if not options.get(required):
            problems.append(f"{where}.{required}: required option is missing")

    if 'name' not in options:
        kwargs['name'] = default_name or str(key)
    elif options['name'] is None:
        kwargs['name'] = socket.gethostname()

    name = kwargs.get('name')
    if isinstance(name, str):
        problem = runner_name_problem(name)
        if problem:
            problems.append(f"{where}.name: invalid runner name {name!r}: {problem}")

    if kwargs.get('token_kind', 'auto') not in TOKEN_KIND_CHOICES:
        problems.append(f"{where}.tokenKind: must be one of {', '.join(TOKEN_KIND_CHOICES)}")

    for option in ('extraLabels', 'extraPackages'):
        if any(not isinstance(item, str) for item in options.get(option) or []):
            problems.append(f"{where}.{option}: entries must be strings")

    environment = options.get('extraEnvironment') or {}
    if isinstance(environment, dict):
        kwargs['extra_environment'] = {str(k): str(v) for k, v in environment.items()}

    if 'node_runtimes' in kwargs:
        runtimes = []
        for value in kwargs['node_runtimes']:
            try:
                runtimes.append(NodeRuntime.parse(value))
            except ValueError as e:
                problems.append(f"{where}.nodeRuntimes: {e}")
        if not kwargs['node_runtimes']:
            problems.append(f"{where}.nodeRuntimes: must not be empty")
        kwargs['node_runtimes'] = runtimes

    if problems:
        return None, problems

    kwargs.setdefault('package', settings.package)
    return RunnerDefinition(**kwargs), []


def load_definitions(path: Path, settings: ManagerSettings) -> List[RunnerDefinition]:
    """
    Load runner definitions from a YAML file

    The top-level ``runners`` key holds either a mapping of definition
    key to options or a list of option mappings.

    Raises:
        ConfigError: If the file is unreadable or any definition is invalid
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError([f"cannot read {path}: {e}"])
    except yaml.YAMLError as e:
        raise ConfigError([f"cannot parse {path}: {e}"])

    if not isinstance(data, dict):
        raise ConfigError([f"{path}: expected a mapping at top level"])

    runners = data.get('runners', {})
    if isinstance(runners, list):
        # List entries have no key to fall back on, so an unnamed runner takes the host name
        entries = [(str(index), options, socket.gethostname()) for index, options in enumerate(runners)]
    elif isinstance(runners, dict):
        entries = [(key, options, None) for key, options in runners.items()]
    else:
        raise ConfigError([f"{path}: 'runners' must be a mapping or a list"])

    definitions = []
    problems = []
    for key, options, default_name in entries:
        definition, errors = parse_definition(key, options, settings, default_name)
        problems.extend(errors)
        if definition:
            definitions.append(definition)

    if problems:
        raise ConfigError(problems)

    return definitions
