"""Pipeline orchestrator: setup -> programmatic -> retry, per task.

The orchestrator never loops past a success and never lets background
work outlive the task that spawned it.
"""

import logging
import time
from dataclasses import replace

from config.defaults import DEFAULTS
from core.attempt import AttemptRunner
from core.background import BackgroundTaskCoordinator
from core.errors import InfrastructureError, PipelineAbortError
from core.events import emit, plugin_info
from core.plugin import PluginRegistration, SpawnContext
from core.state import (
    AttemptResult, BenchmarkResults, BenchmarkSummary,
    PipelineContext, PluginResult, PromptResult, FAILURE, utc_timestamp,
)

logger = logging.getLogger(__name__)

PROGRAMMATIC_MATCH = "programmatic-flow"
FOREGROUND_MATCH = "claude-runner"


class PipelineOrchestrator:
    """Runs tasks through the registered stages.

    Phases:
    1. setup flow, once per task (e.g. build the shared context header)
    2. programmatic flow, one deterministic best-effort pass
    3. retry loop of up to ``max_retries`` attempts over the registered plugins
    """

    def __init__(self, config=None, event_handler=None, coordinator=None):
        self.config = config
        self.event_handler = event_handler
        self._registrations = []
        self._setup_plugins = []
        self._programmatic_plugins = []
        self._runner = AttemptRunner(event_handler)
        if coordinator is None:
            coordinator = BackgroundTaskCoordinator(
                event_handler=event_handler,
                grace_period_s=self._grace_period_s(),
            )
        self.coordinator = coordinator

    def _grace_period_s(self):
        ms = getattr(self.config, "background_grace_period_ms", None)
        if ms is None:
            ms = DEFAULTS["background_grace_period_ms"]
        return ms / 1000

    @property
    def max_retries(self):
        retries = getattr(self.config, "max_retries", None) or DEFAULTS["max_retries"]
        return min(retries, DEFAULTS["hard_max_retries"])

    # -- registration -------------------------------------------------------

    def register(self, plugin, background=None, foreground=True):
        """Register a retry-phase plugin, optionally with a background capability.

        With ``foreground=False`` only the background capability is used.
        """
        registration = PluginRegistration(plugin, background, foreground)
        if not registration.foreground and not registration.has_background:
            raise ValueError(f"Plugin '{plugin.id}' registered with nothing to run")
        self._registrations.append(registration)
        if registration.has_background:
            self.coordinator.add_plugin(plugin.id, background)
        emit(self.event_handler, "plugin-registered",
             plugin=plugin_info(plugin), phase="retry",
             background=registration.has_background)
        return self

    def register_setup_flow(self, *plugins):
        self._setup_plugins = list(plugins)
        for plugin in plugins:
            emit(self.event_handler, "plugin-registered",
                 plugin=plugin_info(plugin), phase="setup", background=False)
        return self

    def register_programmatic_flow(self, *plugins):
        self._programmatic_plugins = list(plugins)
        for plugin in plugins:
            emit(self.event_handler, "plugin-registered",
                 plugin=plugin_info(plugin), phase="programmatic", background=False)
        return self

    def set_background_coordinator(self, coordinator):
        for registration in self._registrations:
            if registration.has_background:
                coordinator.add_plugin(registration.plugin.id, registration.background)
        self.coordinator = coordinator
        return self

    @property
    def plugins(self):
        """Plugins run by each retry attempt, in registration order."""
        return [r.plugin for r in self._registrations if r.foreground]

    def all_plugins(self):
        """Every registered plugin across phases, without duplicates."""
        seen = []
        registered = [r.plugin for r in self._registrations]
        for plugin in self._setup_plugins + self._programmatic_plugins + registered:
            if plugin not in seen:
                seen.append(plugin)
        return seen

    # -- single task --------------------------------------------------------

    def run_task(self, task):
        """Run one task to completion and return its PromptResult."""
        started = time.monotonic()
        group_id = task.prompt_path
        result = PromptResult(
            prompt_path=task.prompt_path,
            function_name=task.function_name,
            success=False,
        )
        context = PipelineContext.for_task(task, config=self.config, max_retries=self.max_retries)

        # Setup flow
        if self._setup_plugins:
            emit(self.event_handler, "setup-flow-start", promptPath=task.prompt_path)
            setup, context = self._runner.run(context, self._setup_plugins)
            result.setup_flow = setup
            if not setup.success:
                logger.warning("Setup flow failed for %s", task.prompt_path)
                result.total_duration_ms = _elapsed_ms(started)
                return result

        # Programmatic flow
        if self._programmatic_plugins:
            emit(self.event_handler, "programmatic-flow-start", promptPath=task.prompt_path)
            programmatic, programmatic_context = self._runner.run(context, self._programmatic_plugins)
            result.programmatic_flow = programmatic
            if programmatic.success:
                result.success = True
                result.match_source = PROGRAMMATIC_MATCH
                result.total_duration_ms = _elapsed_ms(started)
                return result
            context = context.evolve(
                decompiler_seed=_seed_from_programmatic(programmatic, programmatic_context),
                generated_code=None,
            )

        # Retry loop
        self.coordinator.reset()
        token = self.coordinator.foreground_token
        for plugin in self.plugins:
            plugin.set_foreground_token(token)

        def on_background_success(record):
            logger.info("Background task %s found a match for %s",
                        record.task_id, task.function_name)

        self.coordinator.add_success_listener(on_background_success)
        try:
            self._retry_loop(context, result, group_id)
        finally:
            self.coordinator.remove_success_listener(on_background_success)
            self.coordinator.cancel_all(group_id)

        result.background_tasks = self.coordinator.get_all_results()
        background_success = self.coordinator.success_result
        if not result.success and background_success is not None:
            result.success = True
            result.match_source = background_success.plugin_id

        result.total_duration_ms = _elapsed_ms(started)
        return result

    def _retry_loop(self, context, result, group_id):
        max_retries = context.max_retries
        previous_attempts = list(context.previous_attempts)

        for attempt_number in range(1, max_retries + 1):
            if self.coordinator.success_result is not None:
                logger.info("Background match recorded, skipping remaining attempts")
                break

            context = context.evolve(
                attempt_number=attempt_number,
                previous_attempts=tuple(previous_attempts),
            )
            emit(self.event_handler, "attempt-start",
                 attemptNumber=attempt_number, maxRetries=max_retries)

            attempt, final_context = self._runner.run(context, self.plugins)
            result.attempts.append(attempt)
            will_retry = not attempt.success and attempt_number < max_retries
            emit(self.event_handler, "attempt-complete",
                 attemptNumber=attempt_number, success=attempt.success,
                 durationMs=attempt.duration_ms,
                 differenceCount=_difference_count(attempt),
                 willRetry=will_retry)

            if attempt.success:
                result.success = True
                result.match_source = FOREGROUND_MATCH
                break

            self.coordinator.on_attempt_complete(
                SpawnContext(
                    attempt_number=attempt_number,
                    will_retry=will_retry,
                    context=final_context,
                    attempt_results=attempt.plugin_results,
                ),
                group_id=group_id,
            )

            if will_retry:
                previous_attempts.append(attempt.results_map())
                context = context.evolve(previous_attempts=tuple(previous_attempts))
                for plugin in self.plugins:
                    context = plugin.prepare_retry(context, tuple(previous_attempts))

    # -- benchmark ----------------------------------------------------------

    def run_benchmark(self, tasks):
        """Run every task in order and return BenchmarkResults."""
        emit(self.event_handler, "benchmark-start", totalPrompts=len(tasks))
        results = []

        for index, task in enumerate(tasks, start=1):
            emit(self.event_handler, "prompt-start",
                 promptPath=task.prompt_path, functionName=task.function_name,
                 index=index, total=len(tasks))
            try:
                prompt_result = self.run_task(task)
            except PipelineAbortError:
                logger.warning("Run aborted after %d of %d prompts", len(results), len(tasks))
                break
            except InfrastructureError:
                raise
            except Exception as e:
                logger.exception("Unexpected error on %s", task.prompt_path)
                prompt_result = _pipeline_failure(task, e)

            results.append(prompt_result)
            emit(self.event_handler, "prompt-complete",
                 promptPath=task.prompt_path, success=prompt_result.success,
                 attempts=len(prompt_result.attempts),
                 matchSource=prompt_result.match_source)

        summary = BenchmarkSummary.from_results(results)
        emit(self.event_handler, "benchmark-complete", summary=summary.to_dict())
        return BenchmarkResults(
            timestamp=utc_timestamp(),
            config=self.config,
            results=results,
            summary=summary,
        )


def _elapsed_ms(started):
    return int((time.monotonic() - started) * 1000)


def _difference_count(attempt):
    objdiff = attempt.find("objdiff")
    if objdiff is None or not isinstance(objdiff.data, dict):
        return None
    return objdiff.data.get("differenceCount")


def _seed_from_programmatic(attempt, context):
    """Carry the decompiler output into the retry phase with its failure reason."""
    seed = context.decompiler_seed
    if seed is None:
        return None
    if context.generated_code:
        seed = replace(seed, generated_code=context.generated_code)

    compiler = attempt.find("compiler")
    if compiler is not None and compiler.status == FAILURE:
        return replace(seed, compilation_error=compiler.output or compiler.error)

    objdiff = attempt.find("objdiff")
    if objdiff is not None and objdiff.status == FAILURE:
        return replace(seed, objdiff_output=objdiff.output or objdiff.error)
    return seed


def _pipeline_failure(task, error):
    failure = PluginResult(
        plugin_id="pipeline",
        plugin_name="Pipeline",
        status=FAILURE,
        error=f"Unexpected error during one of the plugin executions:\n\n{error}",
    )
    return PromptResult(
        prompt_path=task.prompt_path,
        function_name=task.function_name,
        success=False,
        setup_flow=AttemptResult(
            attempt_number=0,
            success=False,
            duration_ms=0,
            plugin_results=(failure,),
            start_timestamp=utc_timestamp(),
        ),
    )
