"""Tests for core.orchestrator — scripted plugins, no real tools."""

from types import SimpleNamespace

import pytest

from core.background import BackgroundTaskCoordinator
from core.errors import InfrastructureError, PipelineAbortError
from core.events import EventLog
from core.orchestrator import PipelineOrchestrator, PROGRAMMATIC_MATCH, FOREGROUND_MATCH
from core.state import DecompilerSeed, SUCCESS, FAILURE, CANCELLED
from helpers import RecordingCapability, ScriptedPlugin, make_task, objdiff_outcome


def _config(max_retries=3, grace_ms=2000):
    return SimpleNamespace(max_retries=max_retries, background_grace_period_ms=grace_ms)


def _orchestrator(max_retries=3, events=None):
    return PipelineOrchestrator(config=_config(max_retries), event_handler=events)


class WaitingPlugin(ScriptedPlugin):
    """Fails, but from the second call on first waits for the foreground token."""

    def execute(self, context):
        if self.calls and self.token is not None:
            self.token.wait(5)
        return super().execute(context)


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

def test_setup_failure_attempts_nothing():
    setup = ScriptedPlugin("get-context", [FAILURE])
    runner = ScriptedPlugin("claude-runner")
    orch = _orchestrator()
    orch.register_setup_flow(setup)
    orch.register(runner)

    result = orch.run_task(make_task())

    assert not result.success
    assert result.attempts == []
    assert result.setup_flow.success is False
    assert runner.calls == []


def test_setup_context_flows_into_retries():
    setup = ScriptedPlugin("get-context", [{"status": SUCCESS, "updates": {"context_content": "typedef int s32;"}}])
    runner = ScriptedPlugin("claude-runner")
    orch = _orchestrator()
    orch.register_setup_flow(setup)
    orch.register(runner)

    orch.run_task(make_task())
    assert runner.calls[0].context_content == "typedef int s32;"


def test_programmatic_success_skips_retries():
    runner = ScriptedPlugin("claude-runner")
    orch = _orchestrator()
    orch.register_programmatic_flow(ScriptedPlugin("m2c"), ScriptedPlugin("objdiff"))
    orch.register(runner)

    result = orch.run_task(make_task())

    assert result.success
    assert result.match_source == PROGRAMMATIC_MATCH
    assert result.attempts == []
    assert runner.calls == []


def test_programmatic_failure_seeds_retry_phase():
    m2c = ScriptedPlugin("m2c", [{
        "status": SUCCESS,
        "updates": {
            "generated_code": "int f(void) { return 1; }",
            "decompiler_seed": DecompilerSeed(generated_code="int f(void) { return 1; }"),
        },
    }])
    compiler = ScriptedPlugin("compiler", [{"status": FAILURE, "error": "Compilation failed",
                                            "output": "3: expected ';'"}])
    runner = ScriptedPlugin("claude-runner", [FAILURE])
    orch = _orchestrator(max_retries=1)
    orch.register_programmatic_flow(m2c, compiler)
    orch.register(runner)

    result = orch.run_task(make_task())

    assert result.programmatic_flow.success is False
    seen = runner.calls[0]
    assert seen.generated_code is None
    assert seen.decompiler_seed.generated_code == "int f(void) { return 1; }"
    assert seen.decompiler_seed.compilation_error == "3: expected ';'"


def test_programmatic_mismatch_carries_diff_output():
    m2c = ScriptedPlugin("m2c", [{
        "status": SUCCESS,
        "updates": {"generated_code": "x", "decompiler_seed": DecompilerSeed(generated_code="x")},
    }])
    objdiff = ScriptedPlugin("objdiff", [dict(objdiff_outcome(4), output="## Differences")])
    runner = ScriptedPlugin("claude-runner", [FAILURE])
    orch = _orchestrator(max_retries=1)
    orch.register_programmatic_flow(m2c, objdiff)
    orch.register(runner)

    orch.run_task(make_task())
    seed = runner.calls[0].decompiler_seed
    assert seed.objdiff_output == "## Differences"
    assert seed.compilation_error is None


# ---------------------------------------------------------------------------
# Retry loop
# ---------------------------------------------------------------------------

def test_retry_budget_respected():
    runner = ScriptedPlugin("claude-runner", [FAILURE])
    orch = _orchestrator(max_retries=3)
    orch.register(runner)

    result = orch.run_task(make_task())

    assert not result.success
    assert len(result.attempts) == 3
    assert [a.attempt_number for a in result.attempts] == [1, 2, 3]
    assert len(runner.calls) == 3


def test_first_success_ends_loop():
    runner = ScriptedPlugin("claude-runner", [FAILURE, SUCCESS, FAILURE])
    orch = _orchestrator(max_retries=5)
    orch.register(runner)

    result = orch.run_task(make_task())

    assert result.success
    assert result.match_source == FOREGROUND_MATCH
    assert len(result.attempts) == 2
    assert len(runner.calls) == 2


def test_attempt_complete_reports_will_retry():
    events = EventLog()
    orch = _orchestrator(max_retries=3, events=events)
    orch.register(ScriptedPlugin("claude-runner", [FAILURE, FAILURE, FAILURE]))
    orch.run_task(make_task())
    assert [e["willRetry"] for e in events.of_type("attempt-complete")] == [True, True, False]

    events = EventLog()
    orch = _orchestrator(max_retries=3, events=events)
    orch.register(ScriptedPlugin("claude-runner", [SUCCESS]))
    orch.run_task(make_task())
    assert [e["willRetry"] for e in events.of_type("attempt-complete")] == [False]


def test_prepare_retry_sees_every_earlier_attempt():
    runner = ScriptedPlugin("claude-runner")
    objdiff = ScriptedPlugin("objdiff", [objdiff_outcome(9), objdiff_outcome(5), objdiff_outcome(2)])
    orch = _orchestrator(max_retries=3)
    orch.register(runner)
    orch.register(objdiff)

    orch.run_task(make_task())

    # no prepare_retry after the last attempt
    assert len(runner.retry_calls) == 2
    _, previous = runner.retry_calls[1]
    assert len(previous) == 2
    assert previous[0]["objdiff"].data["differenceCount"] == 9
    assert previous[1]["objdiff"].data["differenceCount"] == 5
    assert runner.calls[2].previous_attempts == previous
    assert runner.calls[2].attempt_number == 3


def test_prepare_retry_runs_in_registration_order():
    order = []

    class Ordered(ScriptedPlugin):
        def prepare_retry(self, context, previous_attempts):
            order.append(self.id)
            return context

    orch = _orchestrator(max_retries=2)
    orch.register(Ordered("claude-runner"))
    orch.register(Ordered("compiler", [FAILURE]))
    orch.register(Ordered("objdiff"))
    orch.run_task(make_task())

    assert order == ["claude-runner", "compiler", "objdiff"]


def test_max_retries_capped_by_hard_limit():
    orch = PipelineOrchestrator(config=_config(max_retries=10_000))
    assert orch.max_retries == 100


def test_background_only_registration_not_in_attempt_chain():
    permuter = ScriptedPlugin("decomp-permuter")
    orch = _orchestrator(max_retries=1)
    orch.register(ScriptedPlugin("claude-runner", [FAILURE]))
    orch.register(permuter, background=RecordingCapability(accept=False), foreground=False)

    orch.run_task(make_task())

    assert permuter.calls == []
    assert [p.id for p in orch.plugins] == ["claude-runner"]
    assert permuter in orch.all_plugins()


def test_register_requires_something_to_run():
    with pytest.raises(ValueError):
        _orchestrator().register(ScriptedPlugin("x"), foreground=False)


# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------

def test_background_success_stops_foreground():
    capability = RecordingCapability(runner=lambda config, token: "match")
    runner = WaitingPlugin("claude-runner", [FAILURE])
    orch = _orchestrator(max_retries=4)
    orch.register(runner)
    orch.register(ScriptedPlugin("recorder"), background=capability, foreground=False)

    result = orch.run_task(make_task())

    assert result.success
    assert result.match_source == "recorder"
    assert len(result.attempts) < 4
    assert any(r.status == SUCCESS for r in result.background_tasks)


def test_running_background_task_cancelled_at_closure():

    def run_until_cancelled(config, token):
        token.wait(10)
        return "stopped"

    capability = RecordingCapability(runner=run_until_cancelled)
    orch = _orchestrator(max_retries=2)
    orch.register(ScriptedPlugin("claude-runner", [FAILURE]))
    orch.register(ScriptedPlugin("recorder"), background=capability, foreground=False)

    result = orch.run_task(make_task())

    assert not result.success
    assert [r.status for r in result.background_tasks] == [CANCELLED]
    assert orch.coordinator.get_active_task_count() == 0


def test_no_spawn_on_last_attempt():
    capability = RecordingCapability()
    orch = _orchestrator(max_retries=1)
    orch.register(ScriptedPlugin("claude-runner", [FAILURE]))
    orch.register(ScriptedPlugin("recorder"), background=capability, foreground=False)

    result = orch.run_task(make_task())

    assert capability.spawn_contexts[0].will_retry is False
    assert result.background_tasks == []


def test_foreground_token_handed_to_plugins():
    runner = ScriptedPlugin("claude-runner", [SUCCESS])
    coordinator = BackgroundTaskCoordinator()
    orch = _orchestrator()
    orch.set_background_coordinator(coordinator)
    orch.register(runner)
    orch.run_task(make_task())
    assert runner.token is coordinator.foreground_token


# ---------------------------------------------------------------------------
# Benchmark
# ---------------------------------------------------------------------------

def test_benchmark_events_and_summary():
    events = EventLog()
    orch = _orchestrator(max_retries=2, events=events)
    orch.register(ScriptedPlugin("claude-runner", [SUCCESS]))

    results = orch.run_benchmark([make_task("A"), make_task("B")])

    assert results.summary.total_prompts == 2
    assert results.summary.successful_prompts == 2
    types = events.types()
    assert types[0] == "plugin-registered"
    assert types[1] == "benchmark-start"
    assert types[-1] == "benchmark-complete"
    assert types.count("prompt-start") == 2
    assert types.count("prompt-complete") == 2
    assert events.of_type("prompt-complete")[0]["matchSource"] == FOREGROUND_MATCH


def test_benchmark_records_unexpected_error_and_continues(monkeypatch):
    orch = _orchestrator()
    orch.register(ScriptedPlugin("claude-runner"))
    real_run_task = orch.run_task

    def flaky(task):
        if task.function_name == "Broken":
            raise KeyError("settings")
        return real_run_task(task)

    monkeypatch.setattr(orch, "run_task", flaky)
    results = orch.run_benchmark([make_task("Broken"), make_task("Fine")])

    broken, fine = results.results
    assert not broken.success
    failure = broken.setup_flow.plugin_results[0]
    assert failure.plugin_id == "pipeline"
    assert failure.error.startswith("Unexpected error during one of the plugin executions:")
    assert fine.success


def test_benchmark_abort_keeps_partial_results():
    orch = _orchestrator()
    orch.register(ScriptedPlugin("claude-runner", [SUCCESS, PipelineAbortError()]))

    results = orch.run_benchmark([make_task("A"), make_task("B"), make_task("C")])

    assert [r.function_name for r in results.results] == ["A"]


def test_benchmark_infrastructure_error_propagates():
    orch = _orchestrator()
    orch.register(ScriptedPlugin("objdiff", [InfrastructureError("no objdump")]))
    with pytest.raises(InfrastructureError):
        orch.run_benchmark([make_task()])
