"""Tests for the main.py CLI."""

import json
import os

import main
from core.orchestrator import PipelineOrchestrator
from core.state import SUCCESS
from helpers import ScriptedPlugin, make_task


CONFIG = """
global:
  promptsDir: {prompts}
  outputDir: {output}
  compilerScript: "gcc -c {{{{cFilePath}}}} -o {{{{objFilePath}}}}"
"""


def _config(tmp_path):
    prompts = tmp_path / "prompts"
    prompts.mkdir()
    path = tmp_path / "matchloop.yaml"
    path.write_text(CONFIG.format(prompts=prompts, output=tmp_path / "out"))
    return str(path)


def test_list_plugins(capsys):
    assert main.main(["list-plugins"]) == 0
    out = capsys.readouterr().out
    assert "claude-runner" in out
    assert "decomp-permuter" in out


def test_no_command_prints_help(capsys):
    assert main.main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_run_with_missing_config(tmp_path, capsys):
    assert main.main(["run", "--config", str(tmp_path / "nope.yaml")]) == 2
    assert "Config error" in capsys.readouterr().err


def test_run_with_no_prompts(tmp_path, capsys):
    assert main.main(["run", "--config", _config(tmp_path)]) == 1
    assert "No prompts to run." in capsys.readouterr().out


def test_run_saves_results(tmp_path, monkeypatch, capsys):
    def fake_build(config_file, event_handler=None):
        orchestrator = PipelineOrchestrator(config=config_file.global_, event_handler=event_handler)
        orchestrator.register(ScriptedPlugin("claude-runner", [SUCCESS]))
        return orchestrator

    monkeypatch.setattr(main, "build_orchestrator", fake_build)
    monkeypatch.setattr(main, "load_prompts", lambda prompts_dir, backend: ([make_task()], []))
    out_dir = tmp_path / "custom-out"

    code = main.main(["run", "--config", _config(tmp_path), "--retries", "2", "--output", str(out_dir)])

    assert code == 0
    saved = os.listdir(out_dir)
    assert len(saved) == 1
    with open(out_dir / saved[0]) as f:
        data = json.load(f)
    assert data["config"]["maxRetries"] == 2
    assert data["summary"]["successfulPrompts"] == 1
    out = capsys.readouterr().out
    assert "Matched 1/1 (100.0%)" in out
    assert "=> matched by claude-runner" in out


def test_diff_requires_existing_files(tmp_path, capsys):
    assert main.main(["diff", str(tmp_path / "a.o"), str(tmp_path / "b.o"), "f"]) == 2
    assert "must exist" in capsys.readouterr().err


def test_print_event_formats_attempts(capsys):
    main.print_event({"type": "attempt-complete", "attemptNumber": 2, "success": False, "differenceCount": 3})
    main.print_event({"type": "plugin-execution-start", "pluginId": "x"})
    assert capsys.readouterr().out == "  attempt 2: no match, 3 differences\n"
