"""Tests for core.attempt.AttemptRunner."""

import pytest

from core.attempt import AttemptRunner
from core.errors import InfrastructureError, PipelineAbortError
from core.events import EventLog
from core.state import ReportSection, SUCCESS, FAILURE, SKIPPED
from helpers import ScriptedPlugin, make_context


def test_all_stages_succeed():
    first = ScriptedPlugin("first", [{"status": SUCCESS, "updates": {"generated_code": "int a;"}}])
    second = ScriptedPlugin("second")
    attempt, final = AttemptRunner().run(make_context(), [first, second])

    assert attempt.success
    assert [r.status for r in attempt.plugin_results] == [SUCCESS, SUCCESS]
    assert final.generated_code == "int a;"
    # stage N's output context is stage N+1's input
    assert second.calls[0].generated_code == "int a;"


def test_failure_skips_remaining_stages():
    first = ScriptedPlugin("first", [FAILURE])
    second = ScriptedPlugin("second")
    third = ScriptedPlugin("third")
    attempt, _ = AttemptRunner().run(make_context(), [first, second, third])

    assert not attempt.success
    assert [r.status for r in attempt.plugin_results] == [FAILURE, SKIPPED, SKIPPED]
    assert second.calls == []
    assert third.calls == []
    skipped = attempt.plugin_results[1]
    assert skipped.output == "Skipped due to previous plugin failure"
    assert skipped.duration_ms == 0


def test_failed_stage_context_is_not_forwarded():
    first = ScriptedPlugin("first", [{"status": FAILURE, "updates": {"generated_code": "bad"}}])
    _, final = AttemptRunner().run(make_context(), [first])
    assert final.generated_code is None


def test_exception_becomes_failure():
    boom = ScriptedPlugin("boom", [RuntimeError("disk on fire")])
    after = ScriptedPlugin("after")
    attempt, _ = AttemptRunner().run(make_context(), [boom, after])

    failed = attempt.plugin_results[0]
    assert failed.status == FAILURE
    assert failed.error == "Unexpected error: disk on fire"
    assert attempt.plugin_results[1].status == SKIPPED


@pytest.mark.parametrize("error", [PipelineAbortError(), InfrastructureError("no objdump")])
def test_control_flow_errors_propagate(error):
    with pytest.raises(type(error)):
        AttemptRunner().run(make_context(), [ScriptedPlugin("x", [error])])


def test_attempt_number_taken_from_context():
    attempt, _ = AttemptRunner().run(make_context(attempt_number=4), [ScriptedPlugin("x")])
    assert attempt.attempt_number == 4


def test_emits_execution_events():
    events = EventLog()
    AttemptRunner(events).run(make_context(), [ScriptedPlugin("a", [FAILURE]), ScriptedPlugin("b")])
    assert events.types() == [
        "plugin-execution-start",
        "plugin-execution-complete",
        "plugin-execution-complete",
    ]
    assert events.of_type("plugin-execution-complete")[1]["status"] == SKIPPED


def test_report_sections_attached():
    class WithSections(ScriptedPlugin):
        def get_report_sections(self, result, context):
            return [ReportSection(type="message", title="Hello", message="world")]

    attempt, _ = AttemptRunner().run(make_context(), [WithSections("s")])
    assert attempt.plugin_results[0].sections[0].title == "Hello"
