"""Setup stage: run the user's getContextScript to build the shared context header."""

import logging
import os
import tempfile
import time

from core.plugin import Plugin
from core.sandbox import run_script
from core.state import ReportSection, SUCCESS, FAILURE
from utils.template_engine import render

logger = logging.getLogger(__name__)

EMPTY_OUTPUT_WARNING = (
    "Warning: getContextScript succeeded but produced no stdout output. "
    "If your script writes to a file (e.g., m2ctx.py writes to ctx.c), "
    'add "cat <file>" at the end of your script to pipe the content to stdout.'
)


class GetContextPlugin(Plugin):
    id = "get-context"
    name = "Get Context"
    description = "Executes getContextScript to generate context content"

    def __init__(self, get_context_script="", timeout=None):
        self.get_context_script = get_context_script or ""
        self.timeout = timeout

    def execute(self, context):
        started = time.monotonic()

        if not self.get_context_script.strip():
            return self._result(
                started, SUCCESS,
                output="No getContextScript configured, using empty context",
                data={"contextContent": "", "contextFilePath": ""},
            ), context.evolve(context_content="", context_file_path="")

        tmp_dir = tempfile.mkdtemp(prefix="matchloop_context_")
        context_file_path = os.path.join(tmp_dir, "context.h")

        script = render(self.get_context_script, {
            "functionName": context.function_name,
            "targetObjectPath": context.target_object_path or "",
        })
        stdout, stderr, returncode = run_script(script, tmp_dir, timeout=self.timeout)
        if returncode != 0:
            message = stderr.strip() or f"exit code {returncode}"
            return self._result(
                started, FAILURE, error=f"getContextScript failed: {message}",
            ), context

        with open(context_file_path, "w") as f:
            f.write(stdout)

        if stdout:
            line_count = len(stdout.split("\n"))
            output = f"Generated {line_count} lines of context"
        else:
            output = EMPTY_OUTPUT_WARNING
            logger.warning("getContextScript produced no output for %s", context.function_name)

        return self._result(
            started, SUCCESS,
            output=output,
            data={"contextContent": stdout, "contextFilePath": context_file_path},
        ), context.evolve(context_content=stdout, context_file_path=context_file_path)

    def get_report_sections(self, result, context):
        sections = []
        if isinstance(result.data, dict) and result.data.get("contextContent"):
            sections.append(ReportSection(
                type="code", title="Context Content", language="c",
                code=result.data["contextContent"],
            ))
        if result.error:
            sections.append(ReportSection(type="message", title="Error", message=result.error))
        return sections
