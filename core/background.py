"""Background task coordinator.

Runs cancellable, score-gated tasks (e.g. the permuter) on worker threads
while the foreground retry loop keeps going. Also owns the foreground
token: when a background task finds a match the token fires so long
running foreground plugins can stop early. The token is refreshed on
reset() so every task starts clean.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait

from config.defaults import DEFAULTS
from core.events import emit
from core.plugin import TaskMetadata
from core.state import (
    BackgroundTaskRecord, RUNNING, SUCCESS, FAILURE, CANCELLED, utc_timestamp,
)

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation signal passed to every background runner.

    ``add_callback`` hooks run once on cancel(). ``add_escalation`` hooks run
    only when a runner ignored cancellation past the grace period (used to
    kill whole process groups).
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks = []
        self._escalations = []
        self._escalated = False
        self._progress = None

    @property
    def cancelled(self):
        return self._event.is_set()

    @property
    def escalated(self):
        return self._escalated

    def wait(self, timeout=None):
        return self._event.wait(timeout)

    def add_callback(self, fn):
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(fn)
                return
        fn()

    def add_escalation(self, fn):
        with self._lock:
            if not self._escalated:
                self._escalations.append(fn)
                return
        fn()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            _safe_call(fn)

    def escalate(self):
        self.cancel()
        with self._lock:
            if self._escalated:
                return
            self._escalated = True
            escalations, self._escalations = self._escalations, []
        for fn in escalations:
            _safe_call(fn)

    def on_progress(self, fn):
        """Route report_progress() calls to ``fn(current_best_score, iterations_run)``."""
        self._progress = fn

    def report_progress(self, current_best_score, iterations_run):
        if self._progress:
            self._progress(current_best_score, iterations_run)


def _safe_call(fn):
    try:
        fn()
    except Exception:
        logger.exception("Cancellation hook failed")


class BackgroundHandle:
    """A live background task: its token, future and record."""

    def __init__(self, task_id, plugin_id, group_id, triggered_by_attempt, dedup_key=None):
        self.task_id = task_id
        self.plugin_id = plugin_id
        self.group_id = group_id
        self.dedup_key = dedup_key
        self.token = CancelToken()
        self.future = None
        self.record = BackgroundTaskRecord(
            task_id=task_id,
            plugin_id=plugin_id,
            status=RUNNING,
            triggered_by_attempt=triggered_by_attempt,
            start_timestamp=utc_timestamp(),
        )

    @property
    def done(self):
        return self.record.status != RUNNING

    def cancel(self):
        self.token.cancel()


class BackgroundTaskCoordinator:
    """Tracks background tasks per task group and guarantees cleanup.

    Usage:
    1. add_plugin() for each plugin registered with a background capability
    2. on_attempt_complete() after each foreground attempt
    3. cancel_all() when the task closes, then get_all_results()
    4. reset() before the next task
    """

    def __init__(self, event_handler=None, grace_period_s=None, max_workers=None):
        if grace_period_s is None:
            grace_period_s = DEFAULTS["background_grace_period_ms"] / 1000
        self.event_handler = event_handler
        self.grace_period_s = grace_period_s
        self._max_workers = max_workers or DEFAULTS["background_max_workers"]
        self._executor = None
        self._plugins = []
        self._lock = threading.Lock()
        self._handles = {}
        self._results = []
        self._success_result = None
        self._success_listeners = []
        self._next_task_id = 1
        self._foreground_token = CancelToken()

    # -- registration -------------------------------------------------------

    def add_plugin(self, plugin_id, capability):
        self._plugins.append((plugin_id, capability))

    @property
    def plugin_ids(self):
        return [pid for pid, _ in self._plugins]

    @property
    def foreground_token(self):
        return self._foreground_token

    @property
    def success_result(self):
        with self._lock:
            return self._success_result

    def add_success_listener(self, fn):
        self._success_listeners.append(fn)

    def remove_success_listener(self, fn):
        if fn in self._success_listeners:
            self._success_listeners.remove(fn)

    # -- lifecycle ----------------------------------------------------------

    def reset(self):
        """Clear per-task state. Call between tasks, after cancel_all()."""
        for _, capability in self._plugins:
            capability.reset()
        with self._lock:
            self._results = []
            self._success_result = None
            self._next_task_id = 1
        self._foreground_token = CancelToken()

    def on_attempt_complete(self, spawn_context, group_id=None):
        """Ask each background plugin whether this attempt should spawn a task."""
        spawned = []
        for plugin_id, capability in self._plugins:
            config = capability.should_spawn(spawn_context)
            if config is None:
                continue
            if not spawn_context.will_retry:
                logger.debug("Rejecting %s spawn on the last attempt", plugin_id)
                continue
            if self._has_active(plugin_id, config.dedup_key):
                logger.debug("Rejecting duplicate %s spawn", plugin_id)
                continue
            handle = self.spawn(
                plugin_id,
                lambda token, c=config, cap=capability: cap.run(c, token),
                triggered_by_attempt=spawn_context.attempt_number,
                group_id=group_id,
                capability=capability,
                dedup_key=config.dedup_key,
            )
            spawned.append(handle)
        return spawned

    def _has_active(self, plugin_id, dedup_key):
        with self._lock:
            return any(
                h.plugin_id == plugin_id and h.dedup_key == dedup_key and not h.done
                for h in self._handles.values()
            )

    def spawn(self, plugin_id, runner, triggered_by_attempt=0, group_id=None,
              capability=None, dedup_key=None):
        """Start ``runner(token)`` asynchronously and return its handle."""
        with self._lock:
            task_id = f"{plugin_id}-{self._next_task_id}"
            self._next_task_id += 1
            handle = BackgroundHandle(task_id, plugin_id, group_id, triggered_by_attempt, dedup_key)
            self._handles[task_id] = handle
        handle.token.on_progress(
            lambda score, iterations, tid=task_id: self.report_progress(tid, score, iterations)
        )

        emit(self.event_handler, "background-task-start",
             taskId=task_id, triggeredByAttempt=triggered_by_attempt)
        logger.info("Background task %s started (attempt %d)", task_id, triggered_by_attempt)

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="background",
            )
        handle.future = self._executor.submit(self._execute, handle, runner, capability)
        return handle

    def _execute(self, handle, runner, capability):
        started = time.monotonic()
        succeeded = False
        record = None

        try:
            if handle.token.cancelled:
                record = self._make_record(handle, CANCELLED, started)
                return record
            try:
                result = runner(handle.token)
            except Exception as e:
                logger.warning("Background task %s failed: %s", handle.task_id, e)
                record = self._make_record(handle, FAILURE, started, data={"error": str(e)})
                return record
            try:
                record, succeeded = self._translate(handle, result, capability, started)
            except Exception as e:
                logger.exception("Could not build a record for background task %s", handle.task_id)
                record = self._make_record(handle, FAILURE, started, data={"error": str(e)})
                succeeded = False
                return record
            if handle.token.cancelled and not succeeded:
                record.status = CANCELLED
            return record
        finally:
            if record is None:
                record = self._make_record(handle, FAILURE, started,
                                           data={"error": "Background task did not complete"})
            self._complete(handle, record, succeeded)

    def _translate(self, handle, result, capability, started):
        if capability is None:
            succeeded = bool(result)
            return self._make_record(handle, SUCCESS if succeeded else FAILURE,
                                     started, data=result), succeeded
        metadata = TaskMetadata(
            task_id=handle.task_id,
            duration_ms=int((time.monotonic() - started) * 1000),
            triggered_by_attempt=handle.record.triggered_by_attempt,
            start_timestamp=handle.record.start_timestamp,
        )
        record = capability.to_background_task_record(result, metadata)
        return record, capability.is_success(result)

    def _make_record(self, handle, status, started, data=None):
        return BackgroundTaskRecord(
            task_id=handle.task_id,
            plugin_id=handle.plugin_id,
            status=status,
            triggered_by_attempt=handle.record.triggered_by_attempt,
            start_timestamp=handle.record.start_timestamp,
            duration_ms=int((time.monotonic() - started) * 1000),
            data=data,
        )

    def _complete(self, handle, record, succeeded):
        first_success = False
        with self._lock:
            handle.record = record
            self._handles.pop(handle.task_id, None)
            self._results.append(record)
            if succeeded and self._success_result is None:
                self._success_result = record
                first_success = True

        emit(self.event_handler, "background-task-complete",
             taskId=record.task_id, pluginId=record.plugin_id, status=record.status,
             success=record.success, durationMs=record.duration_ms)
        logger.info("Background task %s finished: %s", record.task_id, record.status)

        if first_success:
            self._foreground_token.cancel()
            for listener in list(self._success_listeners):
                _safe_call(lambda fn=listener: fn(record))

    def report_progress(self, task_id, current_best_score, iterations_run):
        emit(self.event_handler, "background-task-progress",
             taskId=task_id, currentBestScore=current_best_score, iterationsRun=iterations_run)

    def cancel_all(self, group_id=None):
        """Cancel every running task in the group and wait for all of them.

        Runners get ``grace_period_s`` to stop cooperatively; survivors are
        escalated (process-group kill) and then awaited. Safe to call
        repeatedly and with nothing running.
        """
        with self._lock:
            handles = [
                h for h in self._handles.values()
                if group_id is None or h.group_id == group_id
            ]
        if not handles:
            return

        for handle in handles:
            handle.cancel()

        futures = [h.future for h in handles if h.future is not None]
        _, pending = wait(futures, timeout=self.grace_period_s)
        if pending:
            for handle in handles:
                if handle.future in pending:
                    logger.warning("Background task %s ignored cancellation, escalating",
                                   handle.task_id)
                    handle.token.escalate()
            wait(pending)

    def get_all_results(self):
        with self._lock:
            return list(self._results)

    def get_active_task_count(self):
        with self._lock:
            return len(self._handles)

    def shutdown(self):
        self.cancel_all()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
