"""Retry stage: ask Claude for C code and feed back compile/diff results."""

import logging
import re
import time

import anthropic
from pydantic import Field

from config.defaults import DEFAULTS
from config.loader import ConfigModel
from core.errors import PipelineAbortError
from core.plugin import Plugin
from core.state import ReportSection, SUCCESS, FAILURE
from utils.llm import call_llm, get_client
from utils.template_engine import load_template, render

logger = logging.getLogger(__name__)

NO_CODE_ERROR = "Could not extract C code from response"

DEFAULT_KICKOFF = "Write the C code for the function described above."

_C_BLOCK = re.compile(r"```(?:c|C)\n(.*?)```", re.DOTALL)
_FUNCTION_DEF = re.compile(r"\w+\s+\w+\s*\([^)]*\)\s*\{")


class ClaudeRunnerConfig(ConfigModel):
    system_prompt: str = ""
    kickoff_message: str = DEFAULT_KICKOFF
    stall_threshold: int = Field(default=3, gt=0)
    model: str = DEFAULTS["model"]
    max_tokens: int = Field(default=DEFAULTS["max_tokens"], gt=0)
    timeout_ms: int = Field(default=600_000, gt=0)


def extract_c_code(response):
    """Return the last ```c block of a response, or None."""
    blocks = _C_BLOCK.findall(response or "")
    if not blocks:
        return None
    return blocks[-1].strip()


def validate_c_code(code):
    """Return an error string, or None when the code looks like a function."""
    if not code or not code.strip():
        return "Empty code"
    opening = code.count("{")
    closing = code.count("}")
    if opening == 0:
        return "Missing braces - incomplete code"
    if opening != closing:
        return f"Unbalanced braces: {opening} open, {closing} close"
    if not _FUNCTION_DEF.search(code):
        return "No function definition found"
    return None


def build_seed_section(seed):
    section = (
        "\n\n## Initial Decompilation\n"
        "Here is an initial decompilation attempt. Use it as a starting point and improve upon it.\n\n"
        f"```c\n{seed.generated_code}\n```\n"
    )
    if seed.compilation_error:
        section += (
            "\n## Matching Result\n"
            "The initial decompilation failed to compile with this error:\n\n"
            f"```\n{seed.compilation_error}\n```\n"
        )
    elif seed.objdiff_output:
        section += f"\n## Matching Result\n{seed.objdiff_output}\n"
    return section


def _difference_count(attempt):
    objdiff = attempt.get("objdiff")
    if objdiff is None or not isinstance(objdiff.data, dict):
        return None
    return objdiff.data.get("differenceCount")


def _generated_code(result):
    if result is None or not isinstance(result.data, dict):
        return ""
    return result.data.get("generatedCode") or ""


def best_previous_attempt(previous_attempts):
    """The compiled attempt with the fewest differences (first wins ties)."""
    best = None
    for attempt in previous_attempts:
        compiler = attempt.get("compiler")
        count = _difference_count(attempt)
        if compiler is None or compiler.status != SUCCESS or count is None:
            continue
        if best is None or count < _difference_count(best):
            best = attempt
    return best


def build_follow_up_prompt(error, kind, last_code, function_name, reminder=None):
    """Build the feedback message for the next attempt.

    ``kind`` is ``"compile"``, ``"mismatch"`` or anything else for a generic
    matching failure. ``reminder`` is an optional ``(code, mismatches)`` pair.
    """
    if error == NO_CODE_ERROR:
        return (
            "Your last response did not contain any C code. "
            "Please provide only the C code in a single code block using ```c and ``` markers."
        )

    if kind == "compile":
        prompt = (
            f"The code you provided:\n\n```c\n{last_code}\n```\n\n"
            f"failed to compile with this error:\n\n```\n{error}\n```\n\n"
            "Please fix the compilation errors and provide the corrected code.\n\n"
            "# Rules\n\n"
            "- Write the full code again, do not just provide snippets\n"
        )
    elif kind == "mismatch":
        prompt = (
            "The code compiles but doesn't match the target assembly. Here's the diff:\n\n"
            f"{error}\n\n"
            "# Rules\n\n"
            "- Update the C code to match perfectly against the target assembly\n"
            "- Make incremental changes to preserve working parts\n"
        )
    else:
        prompt = (
            "The code compiles but it failed when trying to match the target assembly. "
            "Here is the error message:\n\n"
            f"{error}\n\n"
            "# Rules\n\n"
            f"- Your C code should have exactly only one C function named `{function_name}`\n"
        )

    if reminder:
        code, mismatches = reminder
        prompt += (
            f"\n\nReminder: You previously provided this code that worked partially "
            f"with {mismatches} mismatches\n\n```c\n{code}\n```\n"
        )
    return prompt


def detect_stall(previous_attempts, threshold):
    """Return stall guidance when the last ``threshold`` diff counts did not improve."""
    counts = [c for c in (_difference_count(a) for a in previous_attempts) if c is not None]
    if len(counts) < threshold:
        return None
    window = counts[-threshold:]
    if window[-1] < window[0]:
        return None
    return (
        f"\n\nYour last {threshold} attempts have not improved the match rate. "
        "You appear to be stuck in a loop, repeating similar approaches that aren't working. "
        "Step back and try a fundamentally different strategy. Consider: restructuring the logic, "
        "changing variable types or control flow, reordering operations, or rewriting the function "
        "from scratch using an alternative approach."
    )


class ClaudeRunnerPlugin(Plugin):
    id = "claude-runner"
    name = "Claude Runner"
    description = "Uses Claude to generate C code from assembly"

    def __init__(self, config=None, client=None, llm=call_llm):
        self.config = config or ClaudeRunnerConfig()
        self._system_template = self.config.system_prompt or load_template("claude_system_prompt.md")
        self._client = client
        self._llm = llm
        self._token = None
        self.system_prompt = ""
        self.history = []
        self._feedback_prompt = None
        self._stall_detected = False
        self._last_stall_index = -1

    def set_foreground_token(self, token):
        self._token = token

    def _client_or_default(self):
        if self._client is None:
            self._client = get_client(timeout=self.config.timeout_ms / 1000)
        return self._client

    def _start_session(self, context):
        self.system_prompt = render(self._system_template, {
            "promptContent": context.prompt_content,
            "contextFilePath": context.context_file_path,
            "functionName": context.function_name,
        })
        if context.decompiler_seed is not None:
            self.system_prompt += build_seed_section(context.decompiler_seed)
        self.history = []
        self._feedback_prompt = None
        self._stall_detected = False
        self._last_stall_index = -1

    def execute(self, context):
        started = time.monotonic()

        if not context.prompt_content:
            return self._result(started, FAILURE, error="No prompt content provided"), context

        if self._token is not None and self._token.cancelled:
            return self._result(
                started, FAILURE, error="Stopped: a background task already found a match",
            ), context

        if context.attempt_number == 1 or not self.history:
            self._start_session(context)
            message = self.config.kickoff_message
        else:
            message = self._feedback_prompt or self.config.kickoff_message
        self._feedback_prompt = None
        self.history.append({"role": "user", "content": message})

        try:
            response = self._llm(
                self.system_prompt, list(self.history),
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                client=self._client_or_default(),
                cancel_token=self._token,
            )
        except PipelineAbortError:
            raise
        except (anthropic.APIError, RuntimeError) as e:
            self.history.pop()
            logger.error("Claude request failed: %s", e)
            return self._result(started, FAILURE, error=f"Claude request failed: {e}"), context

        self.history.append({"role": "assistant", "content": response})

        code = extract_c_code(response)
        if code is None:
            return self._result(
                started, FAILURE, error=NO_CODE_ERROR,
                output=f"Raw response (first 500 chars):\n{response[:500]}",
                data={"generatedCode": "", "stallDetected": self._stall_detected},
            ), context

        invalid = validate_c_code(code)
        if invalid:
            return self._result(
                started, FAILURE, error=f"Invalid code structure: {invalid}",
                data={"generatedCode": code, "stallDetected": self._stall_detected},
            ), context

        line_count = len(code.split("\n"))
        return self._result(
            started, SUCCESS,
            output=f"Generated {line_count} lines of C code",
            data={
                "generatedCode": code,
                "rawResponse": response,
                "promptSent": message,
                "codeLength": len(code),
                "stallDetected": self._stall_detected,
            },
        ), context.evolve(generated_code=code)

    def prepare_retry(self, context, previous_attempts):
        if not previous_attempts:
            return context
        last = previous_attempts[-1]
        claude = last.get(self.id)
        if claude is None:
            return context

        compiler = last.get("compiler")
        objdiff = last.get("objdiff")

        best = best_previous_attempt(previous_attempts)
        reminder = None
        last_count = _difference_count(last)
        if best is not None and (last_count is None or _difference_count(best) < last_count):
            reminder = (_generated_code(best.get(self.id)), _difference_count(best))

        if compiler is not None and compiler.status == FAILURE:
            error = compiler.output or compiler.error or "Unknown compilation error"
            kind = "compile"
        elif objdiff is not None and objdiff.status == FAILURE:
            error = objdiff.output or objdiff.error or "Assembly mismatch"
            kind = "mismatch" if (objdiff.error or "").startswith("Assembly mismatch") else "other"
        else:
            error = claude.error or "Unknown error"
            kind = "compile"

        self._feedback_prompt = build_follow_up_prompt(
            error, kind, _generated_code(claude), context.function_name, reminder,
        )

        stall = detect_stall(previous_attempts[self._last_stall_index + 1:], self.config.stall_threshold)
        self._stall_detected = stall is not None
        if stall:
            logger.info("No improvement over %d attempts, adding stall guidance", self.config.stall_threshold)
            self._feedback_prompt += stall
            self._last_stall_index = len(previous_attempts) - 1

        return context

    def get_report_sections(self, result, context):
        sections = []
        if self.history:
            messages = [{"role": "system", "content": self.system_prompt}] + list(self.history)
            sections.append(ReportSection(type="chat", title="Claude Conversation", messages=messages))
        code = _generated_code(result)
        if code:
            sections.append(ReportSection(type="code", title="Generated C Code", language="c", code=code))
        return sections
