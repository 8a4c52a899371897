import stat

import pytest

from runner_lifecycle.config import IdentityScope, RunnerDefinition
from runner_lifecycle.errors import WorkspaceError
from runner_lifecycle.workspace import WorkspaceManager


@pytest.fixture
def workspace(settings, logger):
    return WorkspaceManager(settings, logger)


@pytest.fixture
def identity():
    return IdentityScope.for_options(None, None)


def definition(**overrides):
    options = {'name': 'runner1', 'url': 'https://github.com/o/r', 'token_file': '/t'}
    options.update(overrides)
    return RunnerDefinition(**options)


def test_default_work_dir_is_per_runner(workspace, settings):
    paths = workspace.paths_for(definition())

    assert paths.work_dir == settings.state_dir / '_work' / 'runner1'
    assert paths.state_dir == settings.state_dir / 'runner1'
    assert paths.log_dir == settings.log_dir / 'runner1'


def test_configured_work_dir_wins(workspace, tmp_path):
    paths = workspace.paths_for(definition(work_dir=tmp_path / 'custom'))

    assert paths.work_dir == tmp_path / 'custom'


def test_prepare_creates_directories(workspace, identity):
    paths = workspace.prepare(definition(), identity)

    assert paths.work_dir.is_dir()
    assert paths.state_dir.is_dir()
    assert paths.log_dir.is_dir()
    assert stat.S_IMODE(paths.state_dir.stat().st_mode) == 0o700


def test_prepare_empties_work_dir_but_keeps_it(workspace, identity):
    paths = workspace.paths_for(definition())
    (paths.work_dir / 'repo' / '.git').mkdir(parents=True)
    (paths.work_dir / 'repo' / 'file.txt').write_text('x')
    (paths.work_dir / '.hidden').write_text('x')
    (paths.work_dir / 'link').symlink_to(paths.work_dir / 'repo')

    for _ in range(2):
        workspace.prepare(definition(), identity)

        assert paths.work_dir.is_dir()
        assert list(paths.work_dir.iterdir()) == []


def test_prepare_does_not_follow_symlinks_out_of_work_dir(workspace, identity, tmp_path):
    outside = tmp_path / 'outside'
    outside.mkdir()
    (outside / 'keep.txt').write_text('keep')
    paths = workspace.paths_for(definition())
    paths.work_dir.mkdir(parents=True)
    (paths.work_dir / 'escape').symlink_to(outside)

    workspace.prepare(definition(), identity)

    assert (outside / 'keep.txt').exists()


def test_prepare_never_touches_state_contents(workspace, identity):
    paths = workspace.prepare(definition(), identity)
    (paths.state_dir / '.runner').write_text('{}')

    workspace.prepare(definition(ephemeral=True), identity)

    assert (paths.state_dir / '.runner').exists()


def test_wipe_state_empties_state_dir(workspace, identity):
    paths = workspace.prepare(definition(), identity)
    (paths.state_dir / '.runner').write_text('{}')
    (paths.state_dir / '_diag').mkdir()

    workspace.wipe_state(paths)

    assert paths.state_dir.is_dir()
    assert list(paths.state_dir.iterdir()) == []


def test_prepare_failure_raises_workspace_error(workspace, identity, settings):
    settings.state_dir.parent.mkdir(parents=True, exist_ok=True)
    settings.state_dir.write_text('not a directory')

    with pytest.raises(WorkspaceError):
        workspace.prepare(definition(), identity)


@pytest.mark.parametrize('name', ['.', '..', '_work', 'a/b'])
def test_names_outside_own_directory_rejected(workspace, identity, settings, name):
    sibling = workspace.prepare(definition(name='other'), identity)
    (sibling.state_dir / '.runner').write_text('{}')

    with pytest.raises(WorkspaceError, match='Invalid runner name'):
        workspace.prepare(definition(name=name, ephemeral=True), identity)

    assert (sibling.state_dir / '.runner').exists()
