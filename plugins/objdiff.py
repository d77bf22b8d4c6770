"""Compare the compiled object against the target object."""

import logging
import time

from core.asm_diff import AssemblyDiffEvaluator, format_report
from core.errors import InfrastructureError, SymbolNotFoundError
from core.objdump import ObjdumpBackend
from core.plugin import Plugin
from core.state import ReportSection, SUCCESS, FAILURE

logger = logging.getLogger(__name__)


class ObjdiffPlugin(Plugin):
    id = "objdiff"
    name = "Objdiff"
    description = "Compares the compiled code with target object file"

    def __init__(self, backend=None, target=None):
        self.backend = backend or ObjdumpBackend(target)
        self.evaluator = AssemblyDiffEvaluator()

    def execute(self, context):
        started = time.monotonic()

        if not context.compiled_object_path:
            return self._result(started, FAILURE, error="No compiled object file to compare"), context
        if not context.target_object_path:
            return self._result(started, FAILURE, error="No target object file specified"), context
        if not context.function_name:
            return self._result(started, FAILURE, error="No function name specified"), context

        try:
            current, target = self.backend.diff_files(
                context.compiled_object_path, context.target_object_path,
            )
            report = self.evaluator.evaluate(current, target, context.function_name)
        except SymbolNotFoundError as e:
            return self._result(
                started, FAILURE, error="Symbol not found", output=e.feedback(),
            ), context
        except InfrastructureError:
            raise
        except Exception as e:
            logger.warning("Diff failed for %s: %s", context.function_name, e)
            return self._result(started, FAILURE, error=str(e)), context

        if report.is_match:
            data = report.to_dict()
            data.pop("differences")
            return self._result(
                started, SUCCESS,
                output=f"Perfect match! {report.matching_count} instructions match.",
                data=data,
            ), context

        return self._result(
            started, FAILURE,
            error=f"Assembly mismatch: {report.difference_count} differences found",
            output=format_report(report),
            data=report.to_dict(),
        ), context

    def get_report_sections(self, result, context):
        data = result.data if isinstance(result.data, dict) else {}
        sections = []
        if data.get("currentAsm"):
            sections.append(ReportSection(
                type="code", title="Current Assembly", language="text", code=data["currentAsm"],
            ))
        if data.get("targetAsm"):
            sections.append(ReportSection(
                type="code", title="Target Assembly", language="text", code=data["targetAsm"],
            ))
        if data.get("differences"):
            sections.append(ReportSection(
                type="code", title="Differences", language="diff",
                code="\n".join(data["differences"]),
            ))
        if "matchingCount" in data or "differenceCount" in data:
            sections.append(ReportSection(
                type="message", title="Summary",
                message=f"Matching: {data.get('matchingCount', 0)}, "
                        f"Different: {data.get('differenceCount', 0)}",
            ))
        return sections
