"""Segmented display model for diffed assembly.

Each side of a diff is an ObjectDiff: symbols made of aligned
InstructionRows, each row a list of typed Segments that the evaluator
renders back to text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Row diff kinds
NONE = "none"
INSERT = "insert"
DELETE = "delete"
REPLACE = "replace"
OP_MISMATCH = "op-mismatch"
ARG_MISMATCH = "arg-mismatch"
DIFF_KINDS = (NONE, INSERT, DELETE, REPLACE, OP_MISMATCH, ARG_MISMATCH)

SEGMENT_TAGS = (
    "basic", "line", "address", "opcode", "signed", "unsigned", "opaque",
    "branch-dest", "symbol", "addend", "spacing", "eol",
)

CURRENT = "current"
TARGET = "target"


@dataclass(frozen=True)
class SymbolName:
    name: str
    demangled_name: str | None = None

    @property
    def display(self):
        return self.demangled_name or self.name


@dataclass(frozen=True)
class Segment:
    tag: str
    value: Any = None
    pad_to: int = 0

    def __post_init__(self):
        if self.tag not in SEGMENT_TAGS:
            raise ValueError(f"Unknown segment tag: {self.tag}")


@dataclass
class InstructionRow:
    diff_kind: str = NONE
    segments: tuple = ()

    @property
    def blank(self):
        return not self.segments


@dataclass
class DisplaySymbol:
    name: str
    rows: list[InstructionRow] = field(default_factory=list)

    @property
    def row_count(self):
        return len(self.rows)


@dataclass
class ObjectDiff:
    """One side (current or target) of a diffed object file."""
    path: str
    side: str
    symbols: dict[str, DisplaySymbol] = field(default_factory=dict)

    def find_symbol(self, name) -> DisplaySymbol | None:
        return self.symbols.get(name)

    def symbol_names(self):
        return list(self.symbols)

    def row(self, symbol, index) -> InstructionRow:
        """Row ``index`` of ``symbol``; rows past the end are empty."""
        display = self.symbols[symbol]
        if index < display.row_count:
            return display.rows[index]
        return InstructionRow()

    def row_count(self, symbol):
        return self.symbols[symbol].row_count
