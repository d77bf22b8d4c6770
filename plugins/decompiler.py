"""Programmatic stage: seed C code with the m2c decompiler."""

import logging
import os
import re
import shutil
import tempfile
import time

from config.loader import ConfigModel
from config.targets import get_m2c_arch
from core.asm_diff import AssemblyDiffEvaluator
from core.objdump import ObjdumpBackend
from core.plugin import Plugin
from core.sandbox import run_in_sandbox
from core.state import DecompilerSeed, ReportSection, SUCCESS, FAILURE

logger = logging.getLogger(__name__)

_ADDRESS_PREFIX = re.compile(r"^[0-9a-fA-F]+:\s*")
_REFERENCE = re.compile(r"\s*# REFERENCE_\S*")
_LABEL = re.compile(r"^\.\w+:")


class DecompilerConfig(ConfigModel):
    enable: bool = True
    m2c_path: str = os.path.join("vendor", "m2c", "m2c.py")
    python: str = "python3"


def listing_to_gas(assembly, function_name):
    """Turn a rendered listing (``addr: insn``) into GAS input for m2c."""
    lines = [".text", f"glabel {function_name}"]
    for line in assembly.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        if _LABEL.match(stripped):
            lines.append(stripped)
            continue
        stripped = _REFERENCE.sub("", _ADDRESS_PREFIX.sub("", stripped))
        if stripped:
            lines.append(f"    {stripped}")
    return "\n".join(lines) + "\n"


class M2c:
    """Runs m2c.py as a subprocess."""

    def __init__(self, m2c_path, python="python3", timeout=None):
        self.m2c_path = m2c_path
        self.python = python
        self.timeout = timeout

    def decompile(self, asm, function_name, arch, context_path=None):
        """Returns (code, error); exactly one is set."""
        tmp_dir = tempfile.mkdtemp(prefix="matchloop_m2c_")
        asm_path = os.path.join(tmp_dir, f"{function_name}.s")
        try:
            with open(asm_path, "w") as f:
                f.write(asm)

            command = [
                self.python, os.path.abspath(self.m2c_path), asm_path,
                "--target", arch,
                "--function", function_name,
                "--globals", "none",
            ]
            if context_path:
                command += ["--context", context_path]

            stdout, stderr, returncode = run_in_sandbox(command, tmp_dir, timeout=self.timeout)
            if returncode != 0:
                return None, stderr or stdout or f"m2c exited with code {returncode}"
            code = stdout.strip()
            if not code:
                return None, "m2c produced no output"
            return code, None
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)


class DecompilerPlugin(Plugin):
    id = "m2c"
    name = "m2c"
    description = "Generates initial C decompilation using m2c"

    def __init__(self, config=None, target=None, backend=None):
        self.config = config or DecompilerConfig()
        self.target = target
        self.m2c = M2c(self.config.m2c_path, self.config.python)
        self._backend = backend

    def _target_listing(self, context):
        backend = self._backend or ObjdumpBackend(self.target)
        parsed = backend.parse_object(context.target_object_path)
        _, target = backend.run_diff(parsed, parsed)
        return AssemblyDiffEvaluator().assembly(target, context.function_name)

    def execute(self, context):
        started = time.monotonic()

        if not context.target_object_path:
            return self._result(started, FAILURE, error="No target object path provided"), context

        arch = get_m2c_arch(self.target)
        if not arch:
            return self._result(
                started, FAILURE, error=f"Unsupported target platform for m2c: {self.target}",
            ), context

        try:
            asm = context.asm
            if not asm.strip():
                asm = listing_to_gas(self._target_listing(context), context.function_name)
            code, error = self.m2c.decompile(
                asm, context.function_name, arch, context.context_file_path or None,
            )
        except Exception as e:
            logger.warning("m2c failed for %s: %s", context.function_name, e)
            return self._result(started, FAILURE, error=str(e)), context

        if error:
            return self._result(started, FAILURE, error=error), context

        line_count = len(code.split("\n"))
        return self._result(
            started, SUCCESS,
            output=f"Generated {line_count} lines of C code",
            data={"generatedCode": code},
        ), context.evolve(generated_code=code, decompiler_seed=DecompilerSeed(generated_code=code))

    def get_report_sections(self, result, context):
        sections = []
        if isinstance(result.data, dict) and result.data.get("generatedCode"):
            sections.append(ReportSection(
                type="code", title="Generated C Code", language="c",
                code=result.data["generatedCode"],
            ))
        if result.error:
            sections.append(ReportSection(type="message", title="Error", message=result.error))
        return sections
