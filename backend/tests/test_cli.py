"""Tests for the typer CLI commands that do not touch the network."""

import json

from typer.testing import CliRunner

from genorch.cli.commands import app, load_requests
from genorch.config import settings

runner = CliRunner()


def test_backoff_schedule_table():
    result = runner.invoke(app, ["backoff", "--severity", "high", "--retries", "3"])

    assert result.exit_code == 0
    assert "Delay (s)" in result.output
    first = settings.retry.base_delay_ms * 2.5 / 1000
    assert f"{first:.1f}" in result.output


def test_backoff_rejects_unknown_severity():
    result = runner.invoke(app, ["backoff", "--severity", "extreme"])

    assert result.exit_code == 1
    assert "Invalid severity" in result.output


def test_submit_without_api_key_fails_fast(tmp_path, monkeypatch):
    monkeypatch.setattr(settings.provider, "api_key", None)
    prompts = tmp_path / "prompts.json"
    prompts.write_text(json.dumps([{"prompt": "a"}]))

    result = runner.invoke(app, ["submit", str(prompts)])

    assert result.exit_code == 1
    assert "API key not configured" in result.output


def test_load_requests_accepts_objects_and_strings(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text(json.dumps([
        "a plain prompt",
        {"prompt": "a video", "type": "video", "scene_id": "s1"},
    ]))

    requests = load_requests(path, "image", "cfg-7")

    assert [r.type for r in requests] == ["image", "video"]
    assert requests[1].scene_id == "s1"
    assert all(r.config_id == "cfg-7" for r in requests)
    assert len({r.id for r in requests}) == 2
