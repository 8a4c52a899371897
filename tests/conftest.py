import logging
import stat
import sys
from pathlib import Path

import pytest

# Ensure the package root is importable without installing
root_path = Path(__file__).parent.parent
sys.path.insert(0, str(root_path))

from runner_lifecycle.config import ManagerSettings, RunnerDefinition  # noqa: E402
from runner_lifecycle.credentials import CredentialResolver  # noqa: E402

PAT = 'ghp_' + 'a' * 36
REGISTRATION_TOKEN = 'A' * 29

FAKE_AGENT = """#!/bin/sh
echo "$@" >> "$FAKE_AGENT_LOG"
case "$1" in
  configure)
    if [ -f .runner ]; then
      echo "Cannot configure the runner because it is already configured."
      exit 1
    fi
    if [ -n "$FAKE_CONFIGURE_SLEEP" ]; then
      exec sleep "$FAKE_CONFIGURE_SLEEP"
    fi
    if [ -n "$FAKE_CONFIGURE_FAIL" ]; then
      echo "Http response code: NotFound from 'POST https://api.github.com/actions/runner-registration'"
      exit 1
    fi
    echo '{"agentName": "fake"}' > .runner
    exit 0
    ;;
  run)
    echo "env RUNNER_ROOT=$RUNNER_ROOT RUNNER_NAME=$RUNNER_NAME" >> "$FAKE_AGENT_LOG"
    touch job-state
    if [ -n "$FAKE_RUN_SLEEP" ]; then
      exec sleep "$FAKE_RUN_SLEEP"
    fi
    exit "${FAKE_RUN_EXIT:-0}"
    ;;
  remove)
    rm -f .runner
    exit 0
    ;;
esac
exit 2
"""


class FakeGitHub:
    """Stands in for GitHubAPI; records mint calls"""

    def __init__(self):
        self.registration_calls = []
        self.removal_calls = []

    def create_registration_token(self, runner_url, pat):
        self.registration_calls.append((runner_url, pat))
        return 'MINTEDREGISTRATIONTOKEN000000', '2026-10-16T12:00:00Z'

    def create_removal_token(self, runner_url, pat):
        self.removal_calls.append((runner_url, pat))
        return 'MINTEDREMOVALTOKEN0000000000A', '2026-10-16T12:00:00Z'


@pytest.fixture
def logger():
    return logging.getLogger('runner_lifecycle.tests')


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv('RUNNER_STATE_DIR', str(tmp_path / 'state'))
    monkeypatch.setenv('RUNNER_LOG_DIR', str(tmp_path / 'log'))
    monkeypatch.setenv('RUNNER_CONFIGURE_TIMEOUT', '20')
    monkeypatch.setenv('RUNNER_STOP_TIMEOUT', '5')
    monkeypatch.delenv('RUNNER_PACKAGE', raising=False)
    monkeypatch.delenv('LOG_FILE', raising=False)
    return ManagerSettings(env_file=tmp_path / 'missing.env')


@pytest.fixture
def agent_package(tmp_path):
    """Agent installation directory with a shell script in place of Runner.Listener"""
    package = tmp_path / 'agent'
    (package / 'bin').mkdir(parents=True)
    (package / 'externals' / 'node20').mkdir(parents=True)
    script = package / 'bin' / 'Runner.Listener'
    script.write_text(FAKE_AGENT)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return package


@pytest.fixture
def agent_log(tmp_path):
    return tmp_path / 'agent.log'


@pytest.fixture
def token_file(tmp_path):
    path = tmp_path / 'token'
    path.write_text(PAT)
    return path


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def credentials(fake_github, logger):
    return CredentialResolver(fake_github, logger)


@pytest.fixture
def make_definition(token_file, agent_package, agent_log):
    def _make(name='runner1', **overrides):
        environment = {'FAKE_AGENT_LOG': str(agent_log)}
        environment.update(overrides.pop('extra_environment', {}))
        options = {
            'name': name,
            'url': 'https://github.com/owner/repo',
            'token_file': token_file,
            'enable': True,
            'package': str(agent_package),
            'extra_environment': environment,
        }
        options.update(overrides)
        return RunnerDefinition(**options)
    return _make


def agent_calls(agent_log):
    """Subcommands the fake agent was invoked with, in order"""
    if not agent_log.exists():
        return []
    return [line.split()[0] for line in agent_log.read_text().splitlines() if line and not line.startswith('env ')]
