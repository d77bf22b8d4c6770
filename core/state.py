"""Pipeline state models shared across all stages."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"
PLUGIN_STATUSES = (SUCCESS, FAILURE, SKIPPED)

# Background task record statuses
RUNNING = "running"
CANCELLED = "cancelled"
BACKGROUND_STATUSES = (RUNNING, SUCCESS, FAILURE, CANCELLED)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _config_to_dict(config):
    if config is None:
        return None
    if hasattr(config, "model_dump"):
        return config.model_dump(by_alias=True)
    return dict(config)


@dataclass(frozen=True)
class Task:
    prompt_path: str            # prompt folder, relative to the prompts dir
    prompt_content: str         # prompt.md
    function_name: str
    target_object_path: str
    asm: str                    # GAS-formatted target assembly


@dataclass(frozen=True)
class DecompilerSeed:
    """Programmatic-flow output handed to the code generator when that flow fails."""
    generated_code: str
    compilation_error: str | None = None
    objdiff_output: str | None = None


@dataclass(frozen=True)
class PipelineContext:
    prompt_path: str
    prompt_content: str
    function_name: str
    target_object_path: str
    asm: str
    attempt_number: int = 1
    max_retries: int = 1
    previous_attempts: tuple = ()       # one {plugin_id: PluginResult} map per failed attempt
    generated_code: str | None = None
    compiled_object_path: str | None = None
    context_content: str = ""
    context_file_path: str = ""
    decompiler_seed: DecompilerSeed | None = None
    config: Any = None

    @classmethod
    def for_task(cls, task: Task, config=None, max_retries=1) -> PipelineContext:
        return cls(
            prompt_path=task.prompt_path,
            prompt_content=task.prompt_content,
            function_name=task.function_name,
            target_object_path=task.target_object_path,
            asm=task.asm,
            max_retries=max_retries,
            config=config,
        )

    def evolve(self, **changes) -> PipelineContext:
        """Return a copy with the given fields replaced."""
        return dataclasses.replace(self, **changes)


@dataclass
class ReportSection:
    type: str                   # "code", "message", "chat"
    title: str
    language: str | None = None
    code: str | None = None
    message: str | None = None
    messages: list[dict] | None = None

    def to_dict(self):
        return {k: v for k, v in dataclasses.asdict(self).items() if v is not None}


@dataclass
class PluginResult:
    plugin_id: str
    plugin_name: str
    status: str                 # success|failure|skipped
    duration_ms: int = 0
    output: str | None = None
    error: str | None = None
    data: Any = None
    sections: list[ReportSection] = field(default_factory=list)

    def __post_init__(self):
        if self.status not in PLUGIN_STATUSES:
            raise ValueError(f"Unknown plugin status: {self.status}")
        if self.status == FAILURE and not self.error:
            raise ValueError(f"Plugin '{self.plugin_id}' failed without an error message")
        if self.status == SUCCESS and self.error:
            raise ValueError(f"Plugin '{self.plugin_id}' succeeded but carries an error")

    def to_dict(self):
        data = self.data
        if dataclasses.is_dataclass(data):
            data = dataclasses.asdict(data)
        return {
            "pluginId": self.plugin_id,
            "pluginName": self.plugin_name,
            "status": self.status,
            "durationMs": self.duration_ms,
            "output": self.output,
            "error": self.error,
            "data": data,
            "sections": [s.to_dict() for s in self.sections],
        }


@dataclass(frozen=True)
class AttemptResult:
    attempt_number: int
    success: bool
    duration_ms: int
    plugin_results: tuple
    start_timestamp: str

    def find(self, plugin_id) -> PluginResult | None:
        for result in self.plugin_results:
            if result.plugin_id == plugin_id:
                return result
        return None

    def results_map(self) -> dict:
        """Map plugin id to result, skipping stages that never ran."""
        return {r.plugin_id: r for r in self.plugin_results if r.status != SKIPPED}

    def to_dict(self):
        return {
            "attemptNumber": self.attempt_number,
            "success": self.success,
            "durationMs": self.duration_ms,
            "startTimestamp": self.start_timestamp,
            "pluginResults": [r.to_dict() for r in self.plugin_results],
        }


@dataclass
class BackgroundTaskRecord:
    task_id: str
    plugin_id: str
    status: str                 # running|success|failure|cancelled
    triggered_by_attempt: int
    start_timestamp: str
    duration_ms: int = 0
    data: Any = None

    @property
    def success(self):
        return self.status == SUCCESS

    def to_dict(self):
        data = self.data
        if dataclasses.is_dataclass(data):
            data = dataclasses.asdict(data)
        return {
            "taskId": self.task_id,
            "pluginId": self.plugin_id,
            "status": self.status,
            "success": self.success,
            "triggeredByAttempt": self.triggered_by_attempt,
            "startTimestamp": self.start_timestamp,
            "durationMs": self.duration_ms,
            "data": data,
        }


@dataclass
class PromptResult:
    prompt_path: str
    function_name: str
    success: bool
    attempts: list[AttemptResult] = field(default_factory=list)
    total_duration_ms: int = 0
    setup_flow: AttemptResult | None = None
    programmatic_flow: AttemptResult | None = None
    background_tasks: list[BackgroundTaskRecord] = field(default_factory=list)
    match_source: str | None = None     # "programmatic-flow", "claude-runner" or a background plugin id

    def to_dict(self):
        return {
            "promptPath": self.prompt_path,
            "functionName": self.function_name,
            "success": self.success,
            "attempts": [a.to_dict() for a in self.attempts],
            "totalDurationMs": self.total_duration_ms,
            "setupFlow": self.setup_flow.to_dict() if self.setup_flow else None,
            "programmaticFlow": self.programmatic_flow.to_dict() if self.programmatic_flow else None,
            "backgroundTasks": [t.to_dict() for t in self.background_tasks],
            "matchSource": self.match_source,
        }


@dataclass
class BenchmarkSummary:
    total_prompts: int = 0
    successful_prompts: int = 0
    success_rate: float = 0.0
    avg_attempts: float = 0.0
    total_duration_ms: int = 0

    @classmethod
    def from_results(cls, results) -> BenchmarkSummary:
        total = len(results)
        successful = sum(1 for r in results if r.success)
        return cls(
            total_prompts=total,
            successful_prompts=successful,
            success_rate=(successful / total) * 100 if total else 0.0,
            avg_attempts=sum(len(r.attempts) for r in results) / total if total else 0.0,
            total_duration_ms=sum(r.total_duration_ms for r in results),
        )

    def to_dict(self):
        return {
            "totalPrompts": self.total_prompts,
            "successfulPrompts": self.successful_prompts,
            "successRate": self.success_rate,
            "avgAttempts": self.avg_attempts,
            "totalDurationMs": self.total_duration_ms,
        }


@dataclass
class BenchmarkResults:
    timestamp: str
    config: Any
    results: list[PromptResult]
    summary: BenchmarkSummary

    def to_dict(self):
        return {
            "timestamp": self.timestamp,
            "config": _config_to_dict(self.config),
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
        }
