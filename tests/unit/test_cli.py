"""
Unit tests for the typer CLI (no network).
"""

import json
import sys

import pytest
from loguru import logger
from typer.testing import CliRunner

from clickhouse_sink import Mutations, cli, serialize_batch

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_logger():
    """The CLI callback re-targets loguru at the runner's stderr; put it back."""
    yield
    logger.remove()
    logger.add(sys.stderr)


def test_resolve_prints_literal_hosts():
    result = runner.invoke(
        cli.app, ["resolve", "--host", "http://10.0.0.1:8123", "-H", "http://10.0.0.2:8123"]
    )
    assert result.exit_code == 0
    assert result.stdout.split() == ["http://10.0.0.1:8123", "http://10.0.0.2:8123"]


def test_ship_rejects_missing_table(clean_env, tmp_path):
    src = tmp_path / "events.ndjson"
    src.write_text('{"a": 1}\n')

    result = runner.invoke(cli.app, ["ship", str(src), "--host", "http://10.0.0.1:8123"])

    assert result.exit_code == 2


def test_ship_reads_ndjson_and_skips_bad_lines(clean_env, tmp_path, monkeypatch):
    shipped = []

    async def fake_ship(settings, events):
        shipped.extend(events)
        return len(shipped)

    monkeypatch.setattr(cli, "_ship", fake_ship)
    src = tmp_path / "events.ndjson"
    src.write_text('{"a": 1}\nnot json\n\n{"a": 2}\n')

    result = runner.invoke(
        cli.app, ["ship", str(src), "--host", "http://10.0.0.1:8123", "--table", "logs"]
    )

    assert result.exit_code == 0
    assert shipped == [{"a": 1}, {"a": 2}]
    assert json.loads(result.stdout.strip().splitlines()[-1]) == {"events": 2, "table": "logs"}


def test_replay_without_failure_file(clean_env, tmp_path):
    result = runner.invoke(
        cli.app,
        ["replay", "-H", "http://10.0.0.1:8123", "-t", "logs", "--save-dir", str(tmp_path)],
    )
    assert result.exit_code == 0
    assert json.loads(result.stdout.strip())["events"] == 0


def test_replay_ships_and_removes_claimed_file(clean_env, tmp_path, monkeypatch):
    shipped = []

    async def fake_ship(settings, events):
        shipped.extend(events)
        return len(shipped)

    monkeypatch.setattr(cli, "_ship", fake_ship)
    (tmp_path / "logs_failed.json").write_text('{"a": 1}\n{"a": 2}\n')

    result = runner.invoke(
        cli.app,
        ["replay", "-H", "http://10.0.0.1:8123", "-t", "logs", "--save-dir", str(tmp_path)],
    )

    assert result.exit_code == 0
    assert shipped == [{"a": 1}, {"a": 2}]
    assert list(tmp_path.iterdir()) == []


def test_iter_ndjson_skips_invalid_and_non_object_lines():
    lines = ['{"a": 1}\n', "\n", "not json\n", "[1, 2]\n", '{"b": 2}\n']
    assert list(cli._iter_ndjson(lines)) == [{"a": 1}, {"b": 2}]


def test_replay_does_not_mutate_persisted_rows_again(clean_env, tmp_path, monkeypatch):
    """Dead-lettered rows are already in table shape; replay ships them as saved."""
    captured = {}

    async def fake_ship(settings, events):
        captured["body"] = serialize_batch(list(events), Mutations(settings.mutations))
        return 1

    monkeypatch.setattr(cli, "_ship", fake_ship)
    monkeypatch.setenv("CH_SINK_MUTATIONS", '{"message": "msg"}')
    (tmp_path / "logs_failed.json").write_text('{"message": "hi"}\n')

    result = runner.invoke(
        cli.app,
        ["replay", "-H", "http://10.0.0.1:8123", "-t", "logs", "--save-dir", str(tmp_path)],
    )

    assert result.exit_code == 0
    assert captured["body"] == b'{"message": "hi"}\n'
