"""Assembly diff evaluator.

Turns two diffed object sides into a classified, row-aligned verdict. The
``differences`` list is consumed verbatim as retry feedback, so its block
format (header line, ``Current:``/``Target:`` lines, blank separator) must
stay stable.
"""

import logging
import re
from dataclasses import dataclass, field

from core.asm_model import (
    NONE, INSERT, DELETE, REPLACE, OP_MISMATCH, ARG_MISMATCH,
)
from core.errors import SymbolNotFoundError

logger = logging.getLogger(__name__)

# First match wins
DIFFERENCE_TYPES = (
    (INSERT, "INSERTION"),
    (DELETE, "DELETION"),
    (REPLACE, "REPLACEMENT"),
    (OP_MISMATCH, "OPCODE_MISMATCH"),
    (ARG_MISMATCH, "ARGUMENT_MISMATCH"),
)
FALLBACK_TYPE = "INSTRUCTION_DIFFERENCE"

_WHITESPACE = re.compile(r"\s+")


@dataclass
class DiffReport:
    matching_count: int
    difference_count: int
    differences: list = field(default_factory=list)
    left_asm: str = ""
    right_asm: str = ""

    @property
    def is_match(self):
        return self.difference_count == 0

    def to_dict(self):
        return {
            "matchingCount": self.matching_count,
            "differenceCount": self.difference_count,
            "currentAsm": self.left_asm,
            "targetAsm": self.right_asm,
            "differences": list(self.differences),
        }


def _hex(value):
    return format(value, "x")


def _signed(value, plus=""):
    if value < 0:
        return f"-0x{_hex(-value)}"
    return f"{plus}0x{_hex(value)}"


def render_row(row):
    """Render one instruction row to assembly text."""
    text = ""
    address = ""

    for segment in row.segments:
        tag, value = segment.tag, segment.value

        if tag == "basic":
            if value == " ~>":
                pass
            elif value == " (->":
                text += " # REFERENCE_"
            elif value == " ~> ":
                text += f".L{address}:\n"
            elif value == ")" and " # REFERENCE_" in text:
                pass
            else:
                text += value
        elif tag == "line":
            text += str(value)
        elif tag == "address":
            address = _hex(value)
            text += address + ":"
        elif tag == "opcode":
            text += f"{value} "
        elif tag == "signed":
            text += _signed(value)
        elif tag == "unsigned":
            text += f"0x{_hex(value)}"
        elif tag == "opaque":
            text += value
        elif tag == "branch-dest":
            text += f".L{_hex(value)}"
        elif tag == "symbol":
            text += value.display
        elif tag == "addend":
            text += _signed(value, plus="+")
        elif tag == "spacing":
            text += " " * value
        elif tag == "eol":
            pass

        if segment.pad_to > len(text):
            current_line = text[text.rfind("\n") + 1:]
            if segment.pad_to > len(current_line):
                text += " " * (segment.pad_to - len(current_line))

    return text


def classify(left_kind, right_kind):
    """Name a difference row by the first kind present on either side."""
    for kind, label in DIFFERENCE_TYPES:
        if left_kind == kind or right_kind == kind:
            return label
    return FALLBACK_TYPE


def _normalize(text):
    return _WHITESPACE.sub(" ", text).strip()


class AssemblyDiffEvaluator:
    """Classifies and scores two diffed object sides for one symbol."""

    def evaluate(self, left, right, symbol):
        """Return a DiffReport for ``symbol``.

        Raises SymbolNotFoundError when either side lacks the symbol.
        """
        self._require_symbol(left, right, symbol)
        difference_count, matching_count, differences = self.differences(left, right, symbol)
        return DiffReport(
            matching_count=matching_count,
            difference_count=difference_count,
            differences=differences,
            left_asm=self.assembly(left, symbol),
            right_asm=self.assembly(right, symbol),
        )

    def _require_symbol(self, left, right, symbol):
        missing = [
            side.side for side in (left, right) if side.find_symbol(symbol) is None
        ]
        if missing:
            raise SymbolNotFoundError(symbol, left.symbol_names(), missing)

    def differences(self, left, right, symbol):
        """Return (difference_count, matching_count, difference lines)."""
        difference_count = 0
        matching_count = 0
        lines = []

        for left_row, right_row in self._iter_rows([left, right], symbol):
            left_kind, left_text = left_row
            right_kind, right_text = right_row

            real_difference = (left_kind != NONE or right_kind != NONE) and left_kind != right_kind

            left_clean = _normalize(left_text)
            right_clean = _normalize(right_text)
            content_differs = left_clean != right_clean and left_clean != "" and right_clean != ""

            if real_difference or (content_differs and (left_kind != NONE or right_kind != NONE)):
                difference_count += 1
                lines.append(f"Difference {difference_count} ({classify(left_kind, right_kind)}):")
                lines.append(f"- Current: `{left_text.strip() or '(empty)'}` [{left_kind}]")
                lines.append(f"- Target:  `{right_text.strip() or '(empty)'}` [{right_kind}]")
                lines.append("")
            elif left_text.strip() or right_text.strip():
                matching_count += 1

        return difference_count, matching_count, lines

    def assembly(self, diff, symbol):
        """Render one side of ``symbol`` as text, dropping blank rows."""
        instructions = []
        for rows in self._iter_rows([diff], symbol):
            _, text = rows[0]
            if text.strip():
                instructions.append(text)
        return "\n".join(instructions)

    def _iter_rows(self, diffs, symbol):
        row_count = max(diff.row_count(symbol) for diff in diffs)
        for index in range(row_count):
            try:
                rows = [diff.row(symbol, index) for diff in diffs]
                yield [(row.diff_kind, render_row(row)) for row in rows]
            except Exception as e:
                logger.warning("Error processing row %d for symbol %r: %s", index, symbol, e)


def format_report(report):
    """Markdown feedback for a mismatch: both listings, summary, differences."""
    output = f"## Current Assembly\n```asm\n{report.left_asm}\n```\n\n"
    output += f"## Target Assembly\n```asm\n{report.right_asm}\n```\n\n"
    output += (
        f"## Summary\n- Matching: {report.matching_count}\n"
        f"- Different: {report.difference_count}\n\n"
    )
    if report.differences:
        output += "## Differences\n" + "\n".join(report.differences)
    return output
