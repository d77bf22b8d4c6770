"""Abstract base classes for pipeline stages and their background capability."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from core.state import PipelineContext, PluginResult, BackgroundTaskRecord


class Plugin(ABC):
    """Base class that every pipeline stage must extend."""

    id = "base"
    name = "Base"
    description = "Base plugin"

    @abstractmethod
    def execute(self, context: PipelineContext) -> tuple[PluginResult, PipelineContext]:
        """Run the stage.

        Returns the stage result and the context for the next stage. The
        input context is never mutated; return ``context.evolve(...)`` to
        hand new artifacts downstream.
        """

    def prepare_retry(self, context: PipelineContext, previous_attempts) -> PipelineContext:
        """Inject feedback from earlier attempts before the next one."""
        return context

    def get_report_sections(self, result: PluginResult, context: PipelineContext):
        """Sections shown in reports. Never consulted by control flow."""
        return []

    def set_foreground_token(self, token):
        """Receive the token that fires when a background task finds a match."""

    def _result(self, started, status, **kwargs) -> PluginResult:
        """Build a PluginResult for this plugin, timing from ``started`` (monotonic)."""
        return PluginResult(
            plugin_id=self.id,
            plugin_name=self.name,
            status=status,
            duration_ms=int((time.monotonic() - started) * 1000),
            **kwargs,
        )


@dataclass
class SpawnContext:
    attempt_number: int
    will_retry: bool
    context: PipelineContext
    attempt_results: tuple


@dataclass
class SpawnConfig:
    code: str
    difference_count: int
    payload: dict = field(default_factory=dict)

    @property
    def dedup_key(self):
        return (self.code, self.difference_count)


@dataclass
class TaskMetadata:
    task_id: str
    duration_ms: int
    triggered_by_attempt: int
    start_timestamp: str


class BackgroundCapability(ABC):
    """Long-running, cancellable, score-gated work alongside the retry loop."""

    @abstractmethod
    def should_spawn(self, spawn_context: SpawnContext) -> SpawnConfig | None:
        """Decide whether this attempt deserves a background task."""

    @abstractmethod
    def run(self, config: SpawnConfig, token) -> Any:
        """Do the work. Must return promptly once ``token`` is cancelled."""

    @abstractmethod
    def is_success(self, result) -> bool:
        """True when the result is a perfect match."""

    @abstractmethod
    def to_background_task_record(self, result, metadata: TaskMetadata) -> BackgroundTaskRecord:
        """Translate a finished run into a report record."""

    def reset(self):
        """Clear per-task state (watermark, dispatched code) between tasks."""


@dataclass
class PluginRegistration:
    """A retry-phase plugin plus its explicitly declared background capability."""
    plugin: Plugin
    background: BackgroundCapability | None = None
    foreground: bool = True         # False: background only, not part of the attempt chain

    @property
    def has_background(self):
        return self.background is not None
