"""Subprocess runner with command allowlist, timeout and process-group control."""

import logging
import os
import signal
import subprocess

from config.defaults import DEFAULTS

logger = logging.getLogger(__name__)


def _check_cwd(cwd):
    cwd = os.path.realpath(cwd)
    if not os.path.isdir(cwd):
        raise ValueError(f"Working directory does not exist: {cwd}")
    return cwd


def run_in_sandbox(command, cwd, timeout=None, input_text=None, env=None):
    """Run a command in a sandboxed subprocess.

    Args:
        command: Command as a list of strings, e.g. ["nm", "target.o"]
        cwd: Working directory (must exist)
        timeout: Seconds before killing the process (default from config)
        input_text: Optional text fed to stdin
        env: Extra environment variables layered over os.environ

    Returns:
        (stdout, stderr, returncode) tuple

    Raises:
        ValueError: If command is not in the allowlist or cwd is invalid.
    """
    if timeout is None:
        timeout = DEFAULTS["sandbox_timeout"]

    if not command or not isinstance(command, list):
        raise ValueError("Command must be a non-empty list of strings")

    executable = os.path.basename(command[0])
    allowed = DEFAULTS["allowed_commands"]
    if not any(executable == name or executable.endswith("-" + name) for name in allowed):
        raise ValueError(
            f"Command '{executable}' not in allowlist: {allowed}"
        )

    cwd = _check_cwd(cwd)

    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            input=input_text,
            env={**os.environ, **env} if env else None,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.stdout, result.stderr, result.returncode
    except subprocess.TimeoutExpired:
        return "", f"Command timed out after {timeout}s", -1
    except FileNotFoundError:
        return "", f"Command not found: {command[0]}", -1


def run_script(script, cwd, timeout=None, env=None):
    """Run a rendered bash script with ``set -e`` prepended.

    Returns (stdout, stderr, returncode) like run_in_sandbox.
    """
    if timeout is None:
        timeout = DEFAULTS["compile_timeout"]
    return run_in_sandbox(["bash", "-c", "set -e\n" + script], cwd, timeout=timeout, env=env)


def start_process_group(command, cwd, env=None):
    """Start ``command`` as the leader of a new process group.

    Output is merged into one text pipe so callers can stream progress.
    """
    cwd = _check_cwd(cwd)
    return subprocess.Popen(
        command,
        cwd=cwd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        start_new_session=True,
    )


def kill_process_group(proc, grace_s=5.0):
    """SIGTERM the process group, then SIGKILL whatever survives ``grace_s``.

    ``proc`` must come from start_process_group, so its pid is the group id.
    The group is signalled even when the leader already exited.
    """
    pgid = proc.pid
    try:
        os.killpg(pgid, signal.SIGTERM)
    except ProcessLookupError:
        return

    try:
        proc.wait(timeout=grace_s)
    except subprocess.TimeoutExpired:
        logger.warning("Process group %d ignored SIGTERM, sending SIGKILL", pgid)
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            return
        proc.wait()
