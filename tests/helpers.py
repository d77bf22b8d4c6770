"""Shared test doubles: scripted plugins, tasks and contexts."""

import time

from core.asm_model import InstructionRow, DisplaySymbol, ObjectDiff, Segment, CURRENT, TARGET
from core.plugin import BackgroundCapability, Plugin, SpawnConfig
from core.state import (
    BackgroundTaskRecord, PipelineContext, PluginResult, Task, SUCCESS, FAILURE,
)


def make_task(name="SimpleAdd", prompt_path=None):
    return Task(
        prompt_path=prompt_path or f"prompts/{name}",
        prompt_content=f"Decompile {name}",
        function_name=name,
        target_object_path=f"/tmp/{name}.o",
        asm=f"glabel {name}\n    bx lr\n",
    )


def make_context(**changes):
    context = PipelineContext.for_task(make_task(), max_retries=3)
    return context.evolve(**changes) if changes else context


def result(plugin_id, status=SUCCESS, **kwargs):
    if status == FAILURE:
        kwargs.setdefault("error", f"{plugin_id} failed")
    return PluginResult(plugin_id=plugin_id, plugin_name=plugin_id, status=status, **kwargs)


class ScriptedPlugin(Plugin):
    """Returns scripted outcomes, one per call; the last one repeats.

    An outcome is a status string, a dict of PluginResult fields (``status``
    plus ``output``/``error``/``data``/``updates``), or an exception to raise.
    ``updates`` are applied to the returned context.
    """

    def __init__(self, plugin_id, outcomes=(SUCCESS,), name=None):
        self.id = plugin_id
        self.name = name or plugin_id
        self.description = f"Scripted {plugin_id}"
        self.outcomes = list(outcomes)
        self.calls = []
        self.retry_calls = []
        self.token = None

    def execute(self, context):
        started = time.monotonic()
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes) - 1)]
        self.calls.append(context)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str):
            outcome = {"status": outcome}
        outcome = dict(outcome)
        updates = outcome.pop("updates", {})
        if outcome["status"] == FAILURE:
            outcome.setdefault("error", f"{self.id} failed")
        status = outcome.pop("status")
        return self._result(started, status, **outcome), context.evolve(**updates)

    def prepare_retry(self, context, previous_attempts):
        self.retry_calls.append((context, previous_attempts))
        return context

    def set_foreground_token(self, token):
        self.token = token


def objdiff_outcome(difference_count):
    """A failed objdiff outcome carrying a difference count."""
    return {
        "status": FAILURE,
        "error": f"Assembly mismatch: {difference_count} differences found",
        "data": {"differenceCount": difference_count},
    }


class RecordingCapability(BackgroundCapability):
    """Accepts every spawn; ``run`` delegates to ``runner(config, token)``."""

    def __init__(self, runner=None, accept=True, succeed=lambda r: r == "match"):
        self.runner = runner or (lambda config, token: "done")
        self.accept = accept
        self.succeed = succeed
        self.spawn_contexts = []
        self.resets = 0

    def should_spawn(self, spawn_context):
        self.spawn_contexts.append(spawn_context)
        if not self.accept:
            return None
        code = spawn_context.context.generated_code or f"code-{spawn_context.attempt_number}"
        return SpawnConfig(code=code, difference_count=spawn_context.attempt_number)

    def run(self, config, token):
        return self.runner(config, token)

    def is_success(self, result):
        return self.succeed(result)

    def to_background_task_record(self, result, metadata):
        return BackgroundTaskRecord(
            task_id=metadata.task_id,
            plugin_id="recorder",
            status=SUCCESS if self.is_success(result) else FAILURE,
            triggered_by_attempt=metadata.triggered_by_attempt,
            start_timestamp=metadata.start_timestamp,
            duration_ms=metadata.duration_ms,
            data={"result": result},
        )

    def reset(self):
        self.resets += 1


def row(kind, *segments):
    return InstructionRow(kind, tuple(segments))


def insn(address, mnemonic, *operands, kind="none"):
    """An instruction row: address, opcode, opaque operand text, eol."""
    segments = [Segment("address", address, pad_to=6), Segment("opcode", mnemonic, pad_to=16)]
    segments.extend(Segment("opaque", o) for o in operands)
    segments.append(Segment("eol"))
    return InstructionRow(kind, tuple(segments))


def object_diff(side, symbols, path=None):
    """Build an ObjectDiff from {name: [InstructionRow, ...]}."""
    return ObjectDiff(
        path or f"/tmp/{side}.o",
        side,
        {name: DisplaySymbol(name, list(rows)) for name, rows in symbols.items()},
    )


def current_diff(symbols):
    return object_diff(CURRENT, symbols)


def target_diff(symbols):
    return object_diff(TARGET, symbols)
