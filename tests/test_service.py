import plistlib

import pytest

from runner_lifecycle.config import IdentityScope
from runner_lifecycle.errors import ConfigError
from runner_lifecycle.service import deep_merge, render_launchd, render_plist, service_label
from runner_lifecycle.workspace import WorkspaceManager


def test_deep_merge_nested_and_replace():
    base = {'KeepAlive': {'SuccessfulExit': True}, 'Env': {'A': '1'}, 'RunAtLoad': True}
    overrides = {'KeepAlive': False, 'Env': {'B': '2'}}

    merged = deep_merge(base, overrides)

    assert merged == {'KeepAlive': False, 'Env': {'A': '1', 'B': '2'}, 'RunAtLoad': True}
    assert base['Env'] == {'A': '1'}


def test_overrides_cannot_be_undone_by_defaults(make_definition, settings, logger):
    definition = make_definition('custom', service_overrides={'WorkingDirectory': '/srv/custom', 'RunAtLoad': False})
    paths = WorkspaceManager(settings, logger).paths_for(definition)

    job = render_launchd(definition, settings, IdentityScope.for_options('ci', 'ci'), paths, python='python3')

    assert job['Label'] == service_label(definition) == 'org.github.runner.custom'
    assert job['WorkingDirectory'] == '/srv/custom'
    assert job['RunAtLoad'] is False
    assert job['StandardErrorPath'] == str(paths.log_dir / 'stderr.log')


def test_render_plist_is_valid_xml(make_definition, settings, logger):
    definition = make_definition('plain')
    paths = WorkspaceManager(settings, logger).paths_for(definition)

    data = render_plist(render_launchd(definition, settings, definition.identity, paths))

    assert data.startswith(b'<?xml')
    assert plistlib.loads(data)['Label'] == 'org.github.runner.plain'


def test_job_carries_manager_settings(make_definition, settings, logger):
    settings.package = '/opt/runner'
    definition = make_definition('pinned')
    paths = WorkspaceManager(settings, logger).paths_for(definition)

    env = render_launchd(definition, settings, definition.identity, paths)['EnvironmentVariables']

    assert env['RUNNER_PACKAGE'] == '/opt/runner'
    assert env['RUNNER_STATE_DIR'] == str(settings.state_dir)
    assert env['RUNNER_CONFIGURE_TIMEOUT'] == '20'
    assert env['GITHUB_API_URL'] == settings.api_url
    assert 'PATH' not in env


def test_job_without_package_keeps_search_path(make_definition, settings, logger, monkeypatch):
    monkeypatch.setenv('PATH', '/opt/runner/bin:/usr/bin')
    definition = make_definition('from-path', package='')
    paths = WorkspaceManager(settings, logger).paths_for(definition)

    env = render_launchd(definition, settings, definition.identity, paths)['EnvironmentVariables']

    assert env['PATH'] == '/opt/runner/bin:/usr/bin'
    assert 'RUNNER_PACKAGE' not in env


def test_unserialisable_override_is_config_error(make_definition, settings, logger):
    definition = make_definition('broken', service_overrides={'KeepAlive': None})
    paths = WorkspaceManager(settings, logger).paths_for(definition)

    with pytest.raises(ConfigError, match='org.github.runner.broken'):
        render_plist(render_launchd(definition, settings, definition.identity, paths))
