import json

import pytest

import stackport.cli.__main__ as cli
from conftest import make_plan
from stackport.config import Settings


@pytest.fixture
def cli_settings(tmp_path, monkeypatch):
  config = Settings(
    data_dir=tmp_path,
    db_path=tmp_path / 'jobs.db',
    queue_db_path=tmp_path / 'queue.db',
    worker_enabled=False,
    log_level='warning'
  )
  monkeypatch.setattr(cli, 'settings', config)
  return config


@pytest.fixture
def plan_file(tmp_path):
  path = tmp_path / 'plan.json'
  path.write_text(json.dumps(make_plan().to_dict()), encoding='utf-8')
  return path


class TestCli:
  def test_start_then_list(self, cli_settings, plan_file, capsys):
    assert cli.main(['start', '--plan', str(plan_file), '--user', 'user-1', '--json']) == 0
    job = json.loads(capsys.readouterr().out)['job']
    assert job['status'] == 'running'

    assert cli.main(['list', '--json']) == 0
    listed = json.loads(capsys.readouterr().out)['jobs']
    assert [entry['id'] for entry in listed] == [job['id']]

  def test_pause_and_stats(self, cli_settings, plan_file, capsys):
    cli.main(['start', '--plan', str(plan_file), '--json'])
    job_id = json.loads(capsys.readouterr().out)['job']['id']

    assert cli.main(['pause', job_id]) == 0
    assert 'paused' in capsys.readouterr().out

    assert cli.main(['stats', '--json']) == 0
    assert json.loads(capsys.readouterr().out)['paused'] == 1

  def test_unknown_job_exits_with_error(self, cli_settings, capsys):
    assert cli.main(['status', 'missing']) == 2
    assert 'JOB_NOT_FOUND' in capsys.readouterr().err

  def test_worker_disabled(self, cli_settings, capsys, monkeypatch):
    monkeypatch.setattr(cli, 'build_orchestrator', lambda with_worker=False: cli.ConversionOrchestrator.from_settings(cli_settings, with_worker=False))
    assert cli.main(['worker', '--once']) == 1
    assert 'Worker is disabled.' in capsys.readouterr().err
