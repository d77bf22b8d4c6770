"""binutils backend: parse object files with objdump and align two sides.

objdump does the byte-level work. This module turns its listing into
instructions, aligns current against target by mnemonic and lowers each
instruction into display segments for the evaluator.
"""

from __future__ import annotations

import difflib
import logging
import os
import re
import shutil
from dataclasses import dataclass, field

from config.defaults import DEFAULTS
from config.targets import get_toolchain
from core.asm_model import (
    CURRENT, TARGET, NONE, INSERT, DELETE, REPLACE, OP_MISMATCH, ARG_MISMATCH,
    DisplaySymbol, InstructionRow, ObjectDiff, Segment, SymbolName,
)
from core.errors import InfrastructureError
from core.sandbox import run_in_sandbox

logger = logging.getLogger(__name__)

_SYMBOL_HEADER = re.compile(r"^([0-9a-fA-F]+) <(.+?)>:\s*$")
_INSTRUCTION = re.compile(r"^\s*([0-9a-fA-F]+):\t([^\t]*)\t(.+)$")
_RELOCATION = re.compile(r"^\s*([0-9a-fA-F]+):\s+(R_\S+)\s+(\S+)\s*$")
_REFERENCE = re.compile(r"^([0-9a-fA-F]+) <([^>+]+)(?:\+0x([0-9a-fA-F]+))?>$")
_RELOC_TARGET = re.compile(r"^(.+?)(?:([+-])0x([0-9a-fA-F]+))?$")
_NUMBER = re.compile(r"(#)?(-?(?:0x[0-9a-fA-F]+|\b\d+\b))")
_COMMENT = re.compile(r"\t[@;]|\s{2,}#\s|\t#\s")

ADDRESS_COLUMN = 6
OPCODE_COLUMN = 16


@dataclass
class Instruction:
    address: int
    mnemonic: str
    operands: str = ""
    relocation: str | None = None


@dataclass
class ParsedObject:
    path: str
    side: str
    functions: dict[str, list[Instruction]] = field(default_factory=dict)


def _split_instruction(text):
    match = _COMMENT.search(text)
    if match:
        text = text[:match.start()]
    text = text.strip()
    if "\t" in text:
        mnemonic, _, operands = text.partition("\t")
    else:
        mnemonic, _, operands = text.partition(" ")
    return mnemonic.strip(), operands.strip()


def parse_objdump_output(text):
    """Parse ``objdump -dr`` output into {symbol: [Instruction, ...]}."""
    functions = {}
    current = None

    for line in text.splitlines():
        header = _SYMBOL_HEADER.match(line)
        if header:
            current = functions.setdefault(header.group(2), [])
            continue
        if current is None:
            continue

        reloc = _RELOCATION.match(line)
        if reloc:
            if current:
                current[-1].relocation = reloc.group(3)
            continue

        match = _INSTRUCTION.match(line)
        if not match:
            continue
        mnemonic, operands = _split_instruction(match.group(3))
        if not mnemonic or mnemonic.startswith("..."):
            continue
        current.append(Instruction(int(match.group(1), 16), mnemonic, operands))

    return functions


def _reloc_segments(target):
    match = _RELOC_TARGET.match(target)
    segments = [Segment("symbol", SymbolName(match.group(1)))]
    if match.group(3):
        addend = int(match.group(3), 16)
        segments.append(Segment("addend", -addend if match.group(2) == "-" else addend))
    return segments


def _operand_segments(operands):
    segments = []
    position = 0
    for match in _NUMBER.finditer(operands):
        if match.start() > position:
            segments.append(Segment("opaque", operands[position:match.start()]))
        literal = match.group(2)
        value = int(literal, 16) if "x" in literal else int(literal, 10)
        if match.group(1):
            segments.append(Segment("basic", "#"))
            segments.append(Segment("signed", value))
        elif "x" in literal and value >= 0:
            segments.append(Segment("unsigned", value))
        else:
            segments.append(Segment("signed", value))
        position = match.end()
    if position < len(operands):
        segments.append(Segment("opaque", operands[position:]))
    return segments


def lower_instruction(instruction, symbol, local_addresses=()):
    """Lower one instruction into display segments."""
    segments = [
        Segment("address", instruction.address, pad_to=ADDRESS_COLUMN),
        Segment("opcode", instruction.mnemonic, pad_to=OPCODE_COLUMN),
    ]
    operands = instruction.operands
    reference = _REFERENCE.match(operands)

    if reference:
        name = reference.group(2)
        destination = int(reference.group(1), 16)
        if instruction.relocation:
            segments.extend(_reloc_segments(instruction.relocation))
        elif name == symbol or destination in local_addresses:
            segments.append(Segment("branch-dest", destination))
        else:
            segments.append(Segment("symbol", SymbolName(name)))
            if reference.group(3):
                segments.append(Segment("addend", int(reference.group(3), 16)))
    else:
        segments.extend(_operand_segments(operands))
        if instruction.relocation:
            segments.append(Segment("basic", " (->"))
            segments.extend(_reloc_segments(instruction.relocation))
            segments.append(Segment("basic", ")"))

    segments.append(Segment("eol"))
    return tuple(segments)


def _compare_key(segments, index_by_address):
    """Operand identity for alignment: addresses ignored, branch targets by position."""
    key = []
    for segment in segments:
        if segment.tag in ("address", "eol"):
            continue
        if segment.tag == "branch-dest":
            key.append(("branch-dest", index_by_address.get(segment.value, segment.value)))
        else:
            key.append((segment.tag, segment.value))
    return tuple(key)


def _lower_all(instructions, symbol):
    index_by_address = {ins.address: i for i, ins in enumerate(instructions)}
    lowered = [lower_instruction(ins, symbol, index_by_address) for ins in instructions]
    keys = [_compare_key(segments, index_by_address) for segments in lowered]
    return lowered, keys


def align_instructions(left, right, symbol):
    """Align two instruction lists by mnemonic.

    Returns (left_rows, right_rows) of equal length. Unmatched rows face a
    blank row of kind ``none`` on the other side.
    """
    left_segments, left_keys = _lower_all(left, symbol)
    right_segments, right_keys = _lower_all(right, symbol)

    matcher = difflib.SequenceMatcher(
        None, [i.mnemonic for i in left], [i.mnemonic for i in right], autojunk=False,
    )
    left_rows, right_rows = [], []

    def pair(li, rj, kind):
        left_rows.append(InstructionRow(kind, left_segments[li]))
        right_rows.append(InstructionRow(kind, right_segments[rj]))

    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            for li, rj in zip(range(i1, i2), range(j1, j2)):
                pair(li, rj, NONE if left_keys[li] == right_keys[rj] else ARG_MISMATCH)
        elif tag == "replace" and i2 - i1 == j2 - j1:
            for li, rj in zip(range(i1, i2), range(j1, j2)):
                pair(li, rj, OP_MISMATCH)
        else:
            paired = min(i2 - i1, j2 - j1)
            for k in range(paired):
                pair(i1 + k, j1 + k, REPLACE)
            for li in range(i1 + paired, i2):
                left_rows.append(InstructionRow(DELETE, left_segments[li]))
                right_rows.append(InstructionRow())
            for rj in range(j1 + paired, j2):
                left_rows.append(InstructionRow())
                right_rows.append(InstructionRow(INSERT, right_segments[rj]))

    return left_rows, right_rows


def _plain_symbol(name, instructions):
    segments, _ = _lower_all(instructions, name)
    return DisplaySymbol(name, [InstructionRow(NONE, s) for s in segments])


def diff_parsed(left, right):
    """Diff two parsed objects into (current ObjectDiff, target ObjectDiff)."""
    left_diff = ObjectDiff(left.path, CURRENT)
    right_diff = ObjectDiff(right.path, TARGET)

    for name, instructions in left.functions.items():
        if name in right.functions:
            left_rows, right_rows = align_instructions(instructions, right.functions[name], name)
            left_diff.symbols[name] = DisplaySymbol(name, left_rows)
            right_diff.symbols[name] = DisplaySymbol(name, right_rows)
        else:
            left_diff.symbols[name] = _plain_symbol(name, instructions)

    for name, instructions in right.functions.items():
        if name not in left.functions:
            right_diff.symbols[name] = _plain_symbol(name, instructions)

    return left_diff, right_diff


def find_tool(candidates):
    """Return the first candidate found on PATH, or None."""
    for candidate in candidates:
        path = shutil.which(candidate)
        if path:
            return path
    return None


class ObjdumpBackend:
    """Object file parsing through the target's binutils."""

    def __init__(self, target=None, timeout=None):
        self.target = target or DEFAULTS["target"]
        self.toolchain = get_toolchain(self.target)
        self.timeout = timeout
        self._objdump = None
        self._nm = None

    def _tool(self, kind):
        path = find_tool(self.toolchain[kind])
        if path is None:
            raise InfrastructureError(
                f"No {kind} available for target '{self.target}'. "
                f"Tried: {', '.join(self.toolchain[kind])}"
            )
        return path

    @property
    def objdump(self):
        if self._objdump is None:
            self._objdump = self._tool("objdump")
        return self._objdump

    @property
    def nm(self):
        if self._nm is None:
            self._nm = self._tool("nm")
        return self._nm

    def _run(self, command, path):
        cwd = os.path.dirname(path) or "."
        stdout, stderr, returncode = run_in_sandbox(command, cwd, timeout=self.timeout)
        if returncode != 0:
            tool = os.path.basename(command[0])
            raise RuntimeError(f"{tool} failed on {path}: {stderr.strip()}")
        return stdout

    def parse_object(self, path, side=CURRENT):
        path = os.path.abspath(path)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Object file not found: {path}")
        output = self._run([self.objdump, *self.toolchain["objdump_flags"], path], path)
        return ParsedObject(path, side, parse_objdump_output(output))

    def symbol_names(self, parsed):
        return list(parsed.functions)

    def defined_symbols(self, path):
        """Names of symbols defined in ``path`` according to nm."""
        path = os.path.abspath(path)
        output = self._run([self.nm, "--defined-only", path], path)
        names = []
        for line in output.splitlines():
            parts = line.split()
            if len(parts) >= 3:
                names.append(parts[2])
        return names

    def run_diff(self, left, right):
        return diff_parsed(left, right)

    def diff_files(self, current_path, target_path):
        current = self.parse_object(current_path, CURRENT)
        target = self.parse_object(target_path, TARGET)
        return self.run_diff(current, target)
