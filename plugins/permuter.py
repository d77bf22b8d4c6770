"""decomp-permuter: brute-force code mutations toward a better match.

One plugin, two modes:
- sequential, in the programmatic chain (decompiler -> compiler -> permuter -> objdiff)
- background, spawned next to the retry loop whenever an attempt improves
  the best difference count seen for the task
"""

from __future__ import annotations

import logging
import math
import os
import queue
import re
import shutil
import stat
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import Literal, Optional

from pydantic import Field

from config.loader import ConfigModel
from config.targets import get_toolchain
from core.plugin import BackgroundCapability, Plugin, SpawnConfig
from core.sandbox import kill_process_group, start_process_group
from core.state import BackgroundTaskRecord, ReportSection, SUCCESS, FAILURE
from plugins.compiler import CCompiler
from utils.template_engine import render

logger = logging.getLogger(__name__)

BASE_SCORE = re.compile(r"base score = (\d+)")
BETTER_SCORE = re.compile(r"found a better score! \((\d+)")
NEW_BEST = re.compile(r"new best score! \((\d+)")
ITERATION = re.compile(r"iteration (\d+)")

POLL_INTERVAL_S = 0.2
KILL_GRACE_S = 1.0
BACKGROUND_TIMEOUT_S = 24 * 60 * 60


class PermuterConfig(ConfigModel):
    enable: bool = False
    max_iterations: int = Field(default=1000, gt=0)
    timeout_ms: int = Field(default=120000, gt=0)
    flags: list[str] = Field(default_factory=lambda: ["--show-errors", "-j", "4"])
    compiler_type: Optional[Literal["base", "ido", "mwcc", "gcc"]] = None
    respawn_on_equal_score: bool = False
    permuter_path: str = os.path.join("vendor", "decomp-permuter", "permuter.py")
    python: str = "python3"


@dataclass
class PermuterOptions:
    code: str
    target_object_path: str
    function_name: str
    compiler_script: str
    target: str
    compiler_type: str
    context_content: str = ""
    max_iterations: int | None = None
    timeout_s: float = BACKGROUND_TIMEOUT_S
    flags: list[str] = field(default_factory=list)


@dataclass
class PermuterResult:
    perfect_match: bool = False
    base_score: int = -1
    best_score: int = -1
    iterations_run: int = 0
    best_code: str | None = None
    best_diff: str | None = None
    error: str | None = None
    stdout: str = ""

    @property
    def improved(self):
        return bool(self.best_code) and 0 <= self.best_score < self.base_score

    def summary(self):
        return (
            f"Base score: {self.base_score}\n"
            f"Best score: {self.best_score}\n"
            f"Iterations: {self.iterations_run}"
        )

    def to_dict(self):
        return {
            "perfectMatch": self.perfect_match,
            "baseScore": self.base_score,
            "bestScore": self.best_score,
            "iterationsRun": self.iterations_run,
            "bestCode": self.best_code,
            "bestDiff": self.best_diff,
            "error": self.error,
            "stdout": self.stdout,
        }


def parse_score_line(line):
    """Return (kind, score) for a score message line, else None."""
    for kind, pattern in (("base-score", BASE_SCORE),
                          ("better-score", BETTER_SCORE),
                          ("new-best", NEW_BEST)):
        match = pattern.search(line)
        if match:
            return kind, int(match.group(1))
    return None


def max_iteration(chunk):
    """Highest ``iteration N`` progress counter in a chunk of output (0 if none)."""
    return max((int(n) for n in ITERATION.findall(chunk)), default=0)


COMPILE_SCRIPT = """#!/bin/bash
set -e
CFILE="$(realpath "$1")"
OBJFILE="$(realpath "$3")"
TMPDIR="$(mktemp -d)"

perl -0777 -pe 's|/\\*.*?\\*/||gs' "$CFILE" > "$TMPDIR/stripped.c"
cpp -P "$TMPDIR/stripped.c" "$TMPDIR/preprocessed.c"

cd "$TMPDIR"
{{compilerScript}}

rm -rf "$TMPDIR"
"""

OBJDUMP_WRAPPER = """#!/bin/bash
# Disassembles only {{functionName}} so multi-function targets score fairly.
FUNC_NAME="{{functionName}}"
NM_CANDIDATES=({{nmCandidates}})
OBJDUMP_CANDIDATES=({{objdumpCandidates}})

NM_CMD=""
for candidate in "${NM_CANDIDATES[@]}"; do
  if command -v "$candidate" &>/dev/null; then NM_CMD="$candidate"; break; fi
done
OBJDUMP_CMD=""
for candidate in "${OBJDUMP_CANDIDATES[@]}"; do
  if command -v "$candidate" &>/dev/null; then OBJDUMP_CMD="$candidate"; break; fi
done
if [ -z "$NM_CMD" ] || [ -z "$OBJDUMP_CMD" ]; then
  echo "Error: no suitable nm/objdump found" >&2
  exit 1
fi

ARGS=("$@")
OBJ_FILE="${ARGS[${#ARGS[@]}-1]}"
OBJDUMP_ARGS=("${ARGS[@]:0:${#ARGS[@]}-1}")

NM_OUTPUT=$("$NM_CMD" --numeric-sort "$OBJ_FILE" 2>/dev/null | grep " T ")
FUNC_LINE=$(echo "$NM_OUTPUT" | grep " T $FUNC_NAME$")
if [ -z "$FUNC_LINE" ]; then
  exec "$OBJDUMP_CMD" "${OBJDUMP_ARGS[@]}" "$OBJ_FILE"
fi

START_ADDR=$(echo "$FUNC_LINE" | awk '{print $1}')
# Skip aliases at the same address
NEXT_ADDR=$(echo "$NM_OUTPUT" | awk -v addr="$START_ADDR" '
  found && $1 != addr { print $1; exit }
  $1 == addr { found = 1 }
')

if [ -n "$NEXT_ADDR" ]; then
  exec "$OBJDUMP_CMD" "${OBJDUMP_ARGS[@]}" --start-address="0x$START_ADDR" --stop-address="0x$NEXT_ADDR" "$OBJ_FILE"
fi
exec "$OBJDUMP_CMD" "${OBJDUMP_ARGS[@]}" --start-address="0x$START_ADDR" "$OBJ_FILE"
"""


def _write_executable(path, content):
    with open(path, "w") as f:
        f.write(content)
    os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def setup_working_dir(options):
    """Lay out the directory permuter.py expects.

    context.h stays separate so only the function body gets mutated.
    """
    work_dir = tempfile.mkdtemp(prefix="matchloop_permuter_")
    try:
        _populate_working_dir(work_dir, options)
    except BaseException:
        shutil.rmtree(work_dir, ignore_errors=True)
        raise
    return work_dir


def _populate_working_dir(work_dir, options):
    toolchain = get_toolchain(options.target)

    with open(os.path.join(work_dir, "context.h"), "w") as f:
        f.write(options.context_content or "")
    with open(os.path.join(work_dir, "base.c"), "w") as f:
        f.write('#include "context.h"\n' + options.code)
    shutil.copyfile(options.target_object_path, os.path.join(work_dir, "target.o"))

    compiler_script = render(options.compiler_script, {
        "cFilePath": '"$TMPDIR/preprocessed.c"',
        "objFilePath": '"$OBJFILE"',
        "functionName": options.function_name,
    })
    _write_executable(
        os.path.join(work_dir, "compile.sh"),
        render(COMPILE_SCRIPT, {"compilerScript": compiler_script}),
    )

    wrapper_path = os.path.join(work_dir, "objdump_wrapper.sh")
    _write_executable(wrapper_path, render(OBJDUMP_WRAPPER, {
        "functionName": options.function_name,
        "nmCandidates": " ".join(f'"{c}"' for c in toolchain["nm"]),
        "objdumpCandidates": " ".join(f'"{c}"' for c in toolchain["objdump"]),
    }))

    flags = " ".join(toolchain["objdump_flags"])
    with open(os.path.join(work_dir, "settings.toml"), "w") as f:
        f.write(
            f'func_name = "{options.function_name}"\n'
            f'compiler_type = "{options.compiler_type}"\n'
            f'objdump_command = "{wrapper_path} {flags}"\n'
        )


def read_best_output(work_dir, best_score):
    """Return (source, diff) from the first output-<score>-* directory."""
    matches = sorted(d for d in os.listdir(work_dir) if d.startswith(f"output-{best_score}-"))
    if not matches:
        return None, None
    output_dir = os.path.join(work_dir, matches[0])
    found = []
    for name in ("source.c", "diff.txt"):
        try:
            with open(os.path.join(output_dir, name)) as f:
                found.append(f.read())
        except OSError:
            found.append(None)
    return found[0], found[1]


def _pump(stream, chunks):
    fd = stream.fileno()
    while True:
        try:
            data = os.read(fd, 4096)
        except OSError:
            break
        if not data:
            break
        chunks.put(data.decode(errors="replace"))
    chunks.put(None)


class DecompPermuter:
    """Runs permuter.py in its own process group and streams its score messages."""

    def __init__(self, permuter_path, python="python3"):
        self.permuter_path = os.path.abspath(permuter_path)
        self.python = python

    def run(self, options, token=None):
        """Run until perfect match, iteration limit, timeout or cancellation."""
        work_dir = None
        proc = None
        try:
            work_dir = setup_working_dir(options)
            proc = start_process_group(
                [self.python, self.permuter_path, *options.flags, work_dir],
                cwd=os.path.dirname(self.permuter_path),
            )
            if token is not None:
                token.add_escalation(lambda: kill_process_group(proc, grace_s=0))
            return self._stream(proc, options, work_dir, token)
        except Exception as e:
            logger.warning("decomp-permuter failed: %s", e)
            return PermuterResult(error=str(e))
        finally:
            if proc is not None:
                kill_process_group(proc, grace_s=KILL_GRACE_S)
                proc.stdout.close()
            if work_dir:
                shutil.rmtree(work_dir, ignore_errors=True)

    def _stream(self, proc, options, work_dir, token):
        chunks = queue.Queue()
        threading.Thread(target=_pump, args=(proc.stdout, chunks), daemon=True).start()

        result = PermuterResult()
        output = []
        buffer = ""
        events = 0
        limit = options.max_iterations or math.inf
        deadline = time.monotonic() + options.timeout_s
        closed = False

        def on_line(line):
            nonlocal events
            parsed = parse_score_line(line)
            if parsed is None:
                return False
            kind, score = parsed
            if kind == "base-score":
                result.base_score = result.best_score = score
            else:
                if score < result.best_score or result.best_score == -1:
                    result.best_score = score
                if score == 0:
                    result.perfect_match = True
                    return True
            events += 1
            return events >= limit

        stop = False
        while not stop:
            if token is not None and token.cancelled:
                logger.info("decomp-permuter cancelled")
                break
            if time.monotonic() > deadline:
                logger.info("decomp-permuter timed out after %ss", options.timeout_s)
                break
            try:
                chunk = chunks.get(timeout=POLL_INTERVAL_S)
            except queue.Empty:
                continue
            if chunk is None:
                closed = True
                break

            output.append(chunk)
            buffer += chunk
            *lines, buffer = buffer.split("\n")
            for line in lines:
                if on_line(line):
                    stop = True
                    break

            iteration = max_iteration(chunk)
            if iteration > result.iterations_run:
                result.iterations_run = iteration
                if token is not None:
                    token.report_progress(result.best_score, iteration)

        if closed and buffer.strip():
            on_line(buffer)

        result.stdout = "".join(output)
        returncode = proc.poll()
        if closed and returncode is None:
            try:
                returncode = proc.wait(timeout=KILL_GRACE_S)
            except subprocess.TimeoutExpired:
                pass
        if result.base_score == -1 and returncode not in (None, 0):
            result.error = result.stdout.strip() or f"permuter.py exited with code {returncode}"
            return result

        if 0 <= result.best_score < result.base_score:
            result.best_code, result.best_diff = read_best_output(work_dir, result.best_score)
        if result.best_score < 0:
            result.best_score = result.base_score
        return result


class PermuterBackground(BackgroundCapability):
    """Spawns background permuter runs when an attempt beats the watermark."""

    def __init__(self, plugin):
        self.plugin = plugin
        self.best_difference_count = math.inf
        self.spawned_codes = set()

    def should_spawn(self, spawn_context):
        if not spawn_context.will_retry:
            return None

        difference_count = None
        for result in spawn_context.attempt_results:
            if result.plugin_id == "objdiff" and isinstance(result.data, dict):
                difference_count = result.data.get("differenceCount")
        if difference_count is None:
            return None

        if difference_count > self.best_difference_count:
            return None
        if difference_count == self.best_difference_count and not self.plugin.config.respawn_on_equal_score:
            return None

        code = spawn_context.context.generated_code
        if not code or code in self.spawned_codes:
            return None

        self.best_difference_count = difference_count
        self.spawned_codes.add(code)

        context = spawn_context.context
        return SpawnConfig(
            code=code,
            difference_count=difference_count,
            payload={"options": self.plugin.options_for(context, code, background=True)},
        )

    def run(self, config, token):
        return self.plugin.permuter.run(config.payload["options"], token)

    def is_success(self, result):
        return result.perfect_match

    def to_background_task_record(self, result, metadata):
        return BackgroundTaskRecord(
            task_id=metadata.task_id,
            plugin_id=self.plugin.id,
            status=SUCCESS if result.perfect_match else FAILURE,
            triggered_by_attempt=metadata.triggered_by_attempt,
            start_timestamp=metadata.start_timestamp,
            duration_ms=metadata.duration_ms,
            data=result.to_dict(),
        )

    def reset(self):
        self.best_difference_count = math.inf
        self.spawned_codes.clear()


class DecompPermuterPlugin(Plugin):
    id = "decomp-permuter"
    name = "decomp-permuter"
    description = "Brute-forces code mutations to improve match percentage"

    def __init__(self, config=None, compiler_script="", target="gba", permuter=None, compiler=None):
        self.config = config or PermuterConfig()
        self.compiler_script = compiler_script
        self.target = target
        self.permuter = permuter or DecompPermuter(self.config.permuter_path, self.config.python)
        self.compiler = compiler or CCompiler(compiler_script)
        self.background = PermuterBackground(self)
        self._last_work_dir = None

    def compiler_type(self):
        return self.config.compiler_type or get_toolchain(self.target)["compiler_type"]

    def options_for(self, context, code, background=False):
        return PermuterOptions(
            code=code,
            target_object_path=context.target_object_path,
            function_name=context.function_name,
            compiler_script=self.compiler_script,
            target=self.target,
            compiler_type=self.compiler_type(),
            context_content=context.context_content,
            # Background runs live until cancel_all()
            max_iterations=None if background else self.config.max_iterations,
            timeout_s=BACKGROUND_TIMEOUT_S if background else self.config.timeout_ms / 1000,
            flags=list(self.config.flags),
        )

    def execute(self, context):
        started = time.monotonic()

        if not context.generated_code:
            return self._result(started, FAILURE, error="No generated code to permute"), context
        if not context.compiled_object_path:
            return self._result(
                started, FAILURE, error="Code must compile before running decomp-permuter",
            ), context
        if not context.target_object_path:
            return self._result(started, FAILURE, error="No target object path available"), context

        result = self.permuter.run(self.options_for(context, context.generated_code))

        if result.error:
            return self._result(
                started, FAILURE, error=result.error,
                output=result.summary(), data=result.to_dict(),
            ), context

        updated = context
        if result.improved:
            updated = context.evolve(generated_code=result.best_code)
            if self._last_work_dir:
                shutil.rmtree(self._last_work_dir, ignore_errors=True)
                self._last_work_dir = None
            compiled = self.compiler.compile(
                context.function_name, result.best_code, context.context_file_path,
            )
            if compiled.success:
                # the object must outlive this stage for objdiff
                self._last_work_dir = compiled.work_dir
                updated = updated.evolve(compiled_object_path=compiled.obj_path)
            elif compiled.work_dir:
                shutil.rmtree(compiled.work_dir, ignore_errors=True)

        if result.perfect_match:
            verdict = "Perfect match found!"
        elif result.improved:
            verdict = "Improved but not perfect"
        else:
            verdict = "No improvement found"
        output = f"{result.summary()}\n{verdict}"

        if result.perfect_match:
            return self._result(started, SUCCESS, output=output, data=result.to_dict()), updated
        return self._result(
            started, FAILURE, error=f"No perfect match (best score {result.best_score})",
            output=output, data=result.to_dict(),
        ), updated

    def get_report_sections(self, result, context):
        data = result.data if isinstance(result.data, dict) else None
        sections = []
        if data:
            sections.append(ReportSection(
                type="message", title="Permuter Results",
                message=(
                    f"Base score: {data['baseScore']}\n"
                    f"Best score: {data['bestScore']}\n"
                    f"Iterations: {data['iterationsRun']}\n"
                    f"Perfect match: {'Yes' if data['perfectMatch'] else 'No'}"
                ),
            ))
            if data.get("bestCode"):
                sections.append(ReportSection(
                    type="code", title="Best Permuted Code", language="c", code=data["bestCode"],
                ))
            if data.get("bestDiff"):
                sections.append(ReportSection(
                    type="code", title="Best Permutation Diff", language="diff", code=data["bestDiff"],
                ))
            if data.get("stdout"):
                sections.append(ReportSection(
                    type="code", title="Output", language="text", code=data["stdout"],
                ))
        if result.error:
            sections.append(ReportSection(type="message", title="Error", message=result.error))
        return sections
