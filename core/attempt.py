"""AttemptRunner: one ordered pass over a list of stages."""

import logging
import time

from core.errors import InfrastructureError, PipelineAbortError
from core.events import emit
from core.state import AttemptResult, PluginResult, FAILURE, SKIPPED, utc_timestamp

logger = logging.getLogger(__name__)


class AttemptRunner:
    """Executes stages strictly in order, stopping at the first failure.

    Stages after a failure are recorded as skipped and never run, so a
    failed stage's context is never passed forward.
    """

    def __init__(self, event_handler=None):
        self.event_handler = event_handler

    def run(self, context, plugins):
        """Returns (AttemptResult, final_context)."""
        start_timestamp = utc_timestamp()
        started = time.monotonic()
        results = []
        current = context
        success = True

        for plugin in plugins:
            if not success:
                results.append(PluginResult(
                    plugin_id=plugin.id,
                    plugin_name=plugin.name,
                    status=SKIPPED,
                    output="Skipped due to previous plugin failure",
                ))
                emit(self.event_handler, "plugin-execution-complete",
                     pluginId=plugin.id, pluginName=plugin.name,
                     status=SKIPPED, durationMs=0)
                continue

            emit(self.event_handler, "plugin-execution-start",
                 pluginId=plugin.id, pluginName=plugin.name)
            plugin_started = time.monotonic()

            try:
                result, updated = plugin.execute(current)
                result.sections = plugin.get_report_sections(result, updated) or []
            except (PipelineAbortError, InfrastructureError):
                raise
            except Exception as e:
                logger.warning("Plugin %s raised: %s", plugin.id, e, exc_info=True)
                result = PluginResult(
                    plugin_id=plugin.id,
                    plugin_name=plugin.name,
                    status=FAILURE,
                    duration_ms=int((time.monotonic() - plugin_started) * 1000),
                    error=f"Unexpected error: {e}",
                )
                updated = current

            results.append(result)
            emit(self.event_handler, "plugin-execution-complete",
                 pluginId=plugin.id, pluginName=plugin.name, status=result.status,
                 error=result.error, durationMs=result.duration_ms)

            if result.status == FAILURE:
                success = False
            else:
                current = updated

        attempt = AttemptResult(
            attempt_number=context.attempt_number,
            success=success,
            duration_ms=int((time.monotonic() - started) * 1000),
            plugin_results=tuple(results),
            start_timestamp=start_timestamp,
        )
        return attempt, current
