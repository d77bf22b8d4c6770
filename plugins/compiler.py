"""Compile candidate C code with the user's templated compiler script."""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass, field

from core.plugin import Plugin
from core.sandbox import run_in_sandbox, run_script
from core.state import ReportSection, SUCCESS, FAILURE
from utils.template_engine import render

logger = logging.getLogger(__name__)

MARKER = "_MATCHLOOP_CONCATENATED_CODE"
MARKER_LINE = f"\nextern void {MARKER}();\n"

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_ERROR_LINE = re.compile(r"^(.+?):(\d+):\s*(.+)$")


@dataclass
class CompilationError:
    line: int
    message: str


@dataclass
class CompileResult:
    success: bool
    obj_path: str | None = None
    error_message: str | None = None
    compilation_errors: list[CompilationError] = field(default_factory=list)
    work_dir: str | None = None


def parse_compilation_errors(raw_error, marker_line):
    """Parse ``file:line: message`` lines, rebasing line numbers on the marker."""
    errors = []
    for line in raw_error.split("\n"):
        match = _ERROR_LINE.match(line)
        if match:
            errors.append(CompilationError(
                line=int(match.group(2)) - marker_line,
                message=match.group(3).strip(),
            ))
    return errors


class CCompiler:
    """Compiles C code to an object file.

    The compiler script is a bash template with these variables:
    - ``{{cFilePath}}``: the preprocessed .c file
    - ``{{objFilePath}}``: the .o file to produce
    - ``{{functionName}}``: the function being compiled
    """

    def __init__(self, compiler_script, timeout=None):
        self.compiler_script = compiler_script
        self.timeout = timeout

    def compile(self, function_name, code, context_path="", work_dir=None):
        work_dir = work_dir or tempfile.mkdtemp(prefix="matchloop_compile_")
        stripped_path = os.path.join(work_dir, f"{function_name}_stripped.c")
        preprocessed_path = os.path.join(work_dir, f"{function_name}_preprocessed.c")
        obj_path = os.path.join(work_dir, f"{function_name}.o")

        context_content = ""
        if context_path:
            try:
                with open(context_path) as f:
                    context_content = f.read()
            except OSError:
                logger.debug("Context file %s unreadable, compiling without it", context_path)

        combined = context_content + MARKER_LINE + code
        with open(stripped_path, "w") as f:
            f.write(_BLOCK_COMMENT.sub("", combined))

        try:
            _, stderr, returncode = run_in_sandbox(
                ["cpp", "-P", stripped_path, preprocessed_path], work_dir, timeout=self.timeout,
            )
            if returncode == 0:
                script = render(self.compiler_script, {
                    "cFilePath": preprocessed_path,
                    "objFilePath": obj_path,
                    "functionName": function_name,
                })
                stdout, stderr, returncode = run_script(script, work_dir, timeout=self.timeout)
                if returncode != 0 and not stderr.strip():
                    stderr = stdout
        finally:
            if os.path.exists(stripped_path):
                os.unlink(stripped_path)

        if returncode == 0:
            return CompileResult(success=True, obj_path=obj_path, work_dir=work_dir)

        raw_error = stderr.strip() or f"Compiler exited with code {returncode}"
        errors = []
        if os.path.exists(preprocessed_path):
            with open(preprocessed_path) as f:
                lines = f.read().split("\n")
            marker_line = 1 + next((i for i, line in enumerate(lines) if MARKER in line), -1)
            errors = parse_compilation_errors(raw_error, marker_line)

        return CompileResult(
            success=False,
            error_message="Compilation failed" if errors else raw_error,
            compilation_errors=errors,
            work_dir=work_dir,
        )


class CompilerPlugin(Plugin):
    id = "compiler"
    name = "Compiler"
    description = "Compiles a C code"

    def __init__(self, compiler_script, timeout=None):
        self.compiler = CCompiler(compiler_script, timeout=timeout)
        self._last_work_dir = None

    def _cleanup(self):
        if self._last_work_dir:
            shutil.rmtree(self._last_work_dir, ignore_errors=True)
            self._last_work_dir = None

    def execute(self, context):
        started = time.monotonic()

        if not context.generated_code:
            return self._result(started, FAILURE, error="No generated code to compile"), context

        self._cleanup()
        compiled = self.compiler.compile(
            context.function_name, context.generated_code, context.context_file_path,
        )
        self._last_work_dir = compiled.work_dir

        if not compiled.success:
            if compiled.compilation_errors:
                output = "\n".join(f"{e.line}: {e.message}" for e in compiled.compilation_errors)
            else:
                output = compiled.error_message
            return self._result(started, FAILURE, error="Compilation failed", output=output), context

        if not os.path.exists(compiled.obj_path):
            return self._result(
                started, FAILURE, error="Object file not created after compilation",
            ), context

        return self._result(
            started, SUCCESS,
            output=f"Successfully compiled to {compiled.obj_path}",
            data={"objectFilePath": compiled.obj_path},
        ), context.evolve(compiled_object_path=compiled.obj_path)

    def get_report_sections(self, result, context):
        if not result.output:
            return []
        title = "Compilation Output" if result.status == SUCCESS else "Compilation Error"
        return [ReportSection(type="code", title=title, language="text", code=result.output)]
