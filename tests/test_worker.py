import pytest
from click.testing import CliRunner

from app import worker


@pytest.fixture
def started(monkeypatch):
    calls = []

    async def fake_main(settings=None, with_poller=True):
        calls.append(with_poller)

    monkeypatch.setattr(worker, "main", fake_main)
    return calls


def test_cli_runs_poller_by_default(started):
    result = CliRunner().invoke(worker.cli, [])

    assert result.exit_code == 0, result.output
    assert started == [True]


def test_cli_without_poller(started):
    result = CliRunner().invoke(worker.cli, ["--no-poller"])

    assert result.exit_code == 0, result.output
    assert started == [False]


def test_cli_rejects_unknown_options(started):
    result = CliRunner().invoke(worker.cli, ["--bogus"])

    assert result.exit_code == 2
    assert started == []
