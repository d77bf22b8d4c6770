#!/usr/bin/env python3
"""matchloop dashboard API: start runs and follow their events."""

import logging
import os
import threading
import time
import uuid

from flask import Flask, jsonify, request

from config.defaults import DEFAULTS
from config.loader import ConfigValidationError, get_default_config_path, load_config
from core.errors import InfrastructureError
from core.events import EventLog
from core.objdump import ObjdumpBackend
from plugins.registry import build_orchestrator, list_plugins
from utils.prompt_loader import load_prompts
from utils.report import save_results

logger = logging.getLogger(__name__)

app = Flask(__name__)
history = []

# Runs keyed by job_id: {id: {"status", "events", "results", "error", "created"}}
_jobs = {}
_jobs_lock = threading.Lock()
_MAX_JOBS = 50  # prevent unbounded memory growth
_JOB_TTL = 3600  # expire jobs after 1 hour


def _cleanup_jobs():
    """Remove expired jobs. Called under _jobs_lock."""
    now = time.time()
    expired = [jid for jid, job in _jobs.items() if now - job["created"] > _JOB_TTL]
    for jid in expired:
        del _jobs[jid]
    # If still over limit, remove oldest
    if len(_jobs) > _MAX_JOBS:
        by_age = sorted(_jobs.items(), key=lambda x: x[1]["created"])
        for jid, _ in by_age[:len(_jobs) - _MAX_JOBS]:
            del _jobs[jid]


def _store_job(job):
    """Store a job and return its ID."""
    job_id = str(uuid.uuid4())[:8]
    with _jobs_lock:
        _cleanup_jobs()
        _jobs[job_id] = job
    return job_id


def _get_job(job_id):
    """Get a job by ID, or None if not found/expired."""
    with _jobs_lock:
        job = _jobs.get(job_id)
    if not job:
        return None
    if time.time() - job["created"] > _JOB_TTL:
        with _jobs_lock:
            _jobs.pop(job_id, None)
        return None
    return job


def prepare_run(data, event_handler):
    """Load config and prompts for a run request.

    Returns (orchestrator, tasks, output_dir, load_errors).

    Raises:
        ConfigValidationError: bad config file or plugin section.
    """
    config_file = load_config(data.get("config") or get_default_config_path())
    pipeline = config_file.global_
    if data.get("retries"):
        pipeline.max_retries = min(int(data["retries"]), DEFAULTS["hard_max_retries"])
    if data.get("prompts"):
        pipeline.prompts_dir = data["prompts"]

    orchestrator = build_orchestrator(config_file, event_handler=event_handler)
    tasks, errors = load_prompts(pipeline.prompts_dir, ObjdumpBackend(pipeline.target))
    return orchestrator, tasks, pipeline.output_dir, [str(e) for e in errors]


def _run_job(job_id, job, orchestrator, tasks, output_dir):
    try:
        results = orchestrator.run_benchmark(tasks)
        job["results"] = results.to_dict()
        job["results_path"] = save_results(results, output_dir)
        job["status"] = "done"
        history.append({
            "job_id": job_id,
            "timestamp": results.timestamp,
            "summary": results.summary.to_dict(),
            "results_path": job["results_path"],
        })
    except Exception as e:
        logger.exception("Run %s failed", job_id)
        job["status"] = "failed"
        job["error"] = str(e)
    finally:
        orchestrator.coordinator.shutdown()


@app.route("/api/plugins")
def api_plugins():
    return jsonify([{"id": pid, "description": desc} for pid, desc in list_plugins()])


@app.route("/api/runs", methods=["POST"])
def api_start_run():
    """Start a benchmark run in a worker thread."""
    data = request.get_json(silent=True) or {}
    events = EventLog()
    try:
        orchestrator, tasks, output_dir, load_errors = prepare_run(data, events)
    except ConfigValidationError as e:
        return jsonify({"error": str(e), "plugin_id": e.plugin_id}), 400
    except InfrastructureError as e:
        logger.error("Cannot start run: %s", e)
        return jsonify({"error": f"Infrastructure error: {e}"}), 500
    except OSError as e:
        return jsonify({"error": f"Could not load prompts: {e}"}), 400

    if not tasks:
        return jsonify({"error": "No prompts to run", "load_errors": load_errors}), 400

    job = {
        "status": "running",
        "events": events,
        "results": None,
        "results_path": None,
        "error": None,
        "load_errors": load_errors,
        "created": time.time(),
    }
    job_id = _store_job(job)
    worker = threading.Thread(
        target=_run_job, args=(job_id, job, orchestrator, tasks, output_dir), daemon=True,
    )
    worker.start()
    return jsonify({"job_id": job_id, "prompts": len(tasks), "load_errors": load_errors}), 202


@app.route("/api/runs/<job_id>")
def api_run_status(job_id):
    """Status, events (from ``?since=N``) and results of a run."""
    job = _get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404

    since = request.args.get("since", default=0, type=int)
    events = job["events"].events
    return jsonify({
        "job_id": job_id,
        "status": job["status"],
        "error": job["error"],
        "load_errors": job["load_errors"],
        "events": events[since:],
        "next_event": len(events),
        "results": job["results"],
        "results_path": job["results_path"],
    })


@app.route("/api/history")
def api_history():
    return jsonify(history)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.environ.get("PORT", 5001))
    print(f"matchloop dashboard API at http://localhost:{port}")
    app.run(debug=False, port=port)
