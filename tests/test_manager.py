import plistlib

import pytest

from conftest import agent_calls
from runner_lifecycle.errors import ConfigError, CredentialError, DuplicateNameError
from runner_lifecycle.manager import RunnerManager, check_unique_names
from runner_lifecycle.supervisor import RunnerProcessState


@pytest.fixture
def make_manager(settings, fake_github, logger):
    def _make(definitions):
        return RunnerManager(settings, definitions, github_api=fake_github, logger=logger)
    return _make


def test_duplicate_names_abort_before_anything_starts(make_manager, make_definition, agent_log, settings):
    definitions = [make_definition('same'), make_definition('other'), make_definition('same')]
    manager = make_manager(definitions)

    with pytest.raises(DuplicateNameError) as excinfo:
        manager.reconcile()

    assert excinfo.value.names == ['same']
    assert agent_calls(agent_log) == []
    assert not settings.state_dir.exists()


def test_check_unique_names_accepts_distinct(make_definition):
    check_unique_names([make_definition('a'), make_definition('b')])


def test_reconcile_runs_every_enabled_runner(make_manager, make_definition, agent_log, settings):
    definitions = [make_definition('a'), make_definition('b'), make_definition('c', enable=False)]

    outcomes = make_manager(definitions).reconcile()

    assert sorted(outcomes) == ['a', 'b']
    assert all(outcome.ok for outcome in outcomes.values())
    assert sorted(agent_calls(agent_log)) == ['configure', 'configure', 'run', 'run']
    assert not (settings.state_dir / 'c').exists()


def test_one_failing_runner_does_not_abort_siblings(make_manager, make_definition, tmp_path):
    bad_token = tmp_path / 'bad-token'
    bad_token.write_text('')
    definitions = [
        make_definition('broken', token_file=bad_token),
        make_definition('crashing', extra_environment={'FAKE_RUN_EXIT': '1'}),
        make_definition('healthy'),
    ]

    outcomes = make_manager(definitions).reconcile()

    assert isinstance(outcomes['broken'].error, CredentialError)
    assert not outcomes['broken'].ok
    assert outcomes['crashing'].result.state == RunnerProcessState.FAILED
    assert not outcomes['crashing'].ok
    assert outcomes['healthy'].ok
    assert outcomes['healthy'].result.state == RunnerProcessState.IDLE


def test_unexpected_exception_is_isolated(make_manager, make_definition, monkeypatch):
    manager = make_manager([make_definition('a'), make_definition('b')])
    original = manager._run_cycle

    def flaky(definition):
        if definition.name == 'a':
            raise RuntimeError('boom')
        return original(definition)

    monkeypatch.setattr(manager, '_run_cycle', flaky)

    outcomes = manager.reconcile()

    assert isinstance(outcomes['a'].error, RuntimeError)
    assert outcomes['b'].ok


def test_shared_identity_is_reported(make_manager, make_definition, caplog):
    manager = make_manager([make_definition('a'), make_definition('b'),
                            make_definition('c', user='ci', group='ci')])

    with caplog.at_level('WARNING', logger='runner_lifecycle.tests'):
        manager.reconcile()

    warnings = [r.getMessage() for r in caplog.records if 'share the identity' in r.getMessage()]
    assert len(warnings) == 1
    assert 'a, b' in warnings[0]
    assert 'c' not in warnings[0].split('share')[0]


def test_work_dir_cleaned_on_every_reconcile(make_manager, make_definition, settings):
    manager = make_manager([make_definition('a')])
    manager.reconcile()
    leftover = settings.state_dir / '_work' / 'a' / 'checkout'
    leftover.mkdir()

    manager.reconcile()

    assert (settings.state_dir / '_work' / 'a').is_dir()
    assert not leftover.exists()


def test_run_one_loops_ephemeral_until_failure(make_manager, make_definition, agent_log, tmp_path):
    # The fake agent succeeds once, then crashes on the next run
    counter = tmp_path / 'runs'
    definition = make_definition('eph', ephemeral=True)
    manager = make_manager([definition])
    original = manager._run_cycle

    def counting(d):
        runs = int(counter.read_text()) if counter.exists() else 0
        counter.write_text(str(runs + 1))
        if runs == 1:
            d.extra_environment["FAKE_RUN_EXIT"] = "2"
        return original(d)

    manager._run_cycle = counting

    result = manager.run_one('eph', loop=True)

    assert result.state == RunnerProcessState.FAILED
    assert agent_calls(agent_log) == ['configure', 'run', 'configure', 'run']


def test_run_one_without_loop_returns_restart_request(make_manager, make_definition):
    manager = make_manager([make_definition('eph', ephemeral=True)])

    result = manager.run_one('eph')

    assert result.restart_requested


def test_run_one_unknown_name(make_manager, make_definition):
    with pytest.raises(KeyError):
        make_manager([make_definition('a')]).run_one('missing')


def test_deregister_and_status(make_manager, make_definition, fake_github):
    manager = make_manager([make_definition('a')])
    manager.reconcile()

    assert manager.get_status()['runners'][0]['state'] == 'idle'

    manager.deregister('a')

    status = manager.get_status()['runners'][0]
    assert status['state'] == 'unregistered'
    assert status['identity'].endswith('(shared)')
    assert len(fake_github.removal_calls) == 1


def test_render_services(make_manager, make_definition):
    definitions = [
        make_definition('eph', ephemeral=True, service_overrides={'Nice': 5, 'EnvironmentVariables': {'X': '1'}}),
        make_definition('steady', user='ci', group='staff'),
        make_definition('off', enable=False),
    ]

    services = make_manager(definitions).render_services(python='/usr/bin/python3')

    assert sorted(services) == ['org.github.runner.eph', 'org.github.runner.steady']
    eph = plistlib.loads(services['org.github.runner.eph'])
    assert eph['KeepAlive'] == {'SuccessfulExit': True}
    assert eph['Nice'] == 5
    assert eph['EnvironmentVariables']['X'] == '1'
    assert 'RUNNER_STATE_DIR' in eph['EnvironmentVariables']
    assert eph['ProgramArguments'][:3] == ['/usr/bin/python3', '-m', 'runner_lifecycle']
    assert eph['ProgramArguments'][-2:] == ['--name', 'eph']
    steady = plistlib.loads(services['org.github.runner.steady'])
    assert steady['KeepAlive'] is True
    assert (steady['UserName'], steady['GroupName']) == ('ci', 'staff')
    assert steady['StandardOutPath'].endswith('steady/stdout.log')


def test_shutdown_reaches_runner_started_afterwards(make_manager, make_definition, agent_log):
    manager = make_manager([make_definition('a')])
    assert manager.request_shutdown()

    result = manager.run_one('a')

    assert result.stopped
    assert agent_calls(agent_log) == []


def test_render_services_rejects_unserialisable_overrides(make_manager, make_definition):
    manager = make_manager([make_definition('a', service_overrides={'Nice': None})])

    with pytest.raises(ConfigError, match='cannot render launchd job'):
        manager.render_services()
