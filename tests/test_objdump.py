"""Tests for core.objdump — parsing canned objdump listings and alignment."""

import pytest

from core.asm_diff import AssemblyDiffEvaluator
from core.asm_model import NONE, INSERT, DELETE, REPLACE, OP_MISMATCH, ARG_MISMATCH, CURRENT, TARGET
from core.errors import InfrastructureError
from core.objdump import (
    Instruction, ObjdumpBackend, ParsedObject,
    align_instructions, diff_parsed, lower_instruction, parse_objdump_output,
)


LISTING = """
/tmp/current.o:     file format elf32-littlearm


Disassembly of section .text:

00000000 <SimpleAdd>:
   0:\t1840      \tadds\tr0, r0, r1
   2:\t4770      \tbx\tlr

00000004 <LoadGlobal>:
   4:\t4801      \tldr\tr0, [pc, #4]\t@ (c <LoadGlobal+0x8>)
   6:\t6800      \tldr\tr0, [r0, #0]
   8:\te7fc      \tb.n\t4 <LoadGlobal>
   a:\t46c0      \tnop\t\t\t@ (mov r8, r8)
   c:\t00000000 \t.word\t0x00000000
\t\t\tc: R_ARM_ABS32\tgCounter
"""


def _ins(address, mnemonic, operands=""):
    return Instruction(address, mnemonic, operands)


def _kinds(rows):
    return [r.diff_kind for r in rows]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def test_parse_symbols_and_instructions():
    functions = parse_objdump_output(LISTING)
    assert list(functions) == ["SimpleAdd", "LoadGlobal"]
    assert functions["SimpleAdd"] == [_ins(0, "adds", "r0, r0, r1"), _ins(2, "bx", "lr")]


def test_parse_strips_trailing_comments():
    load = parse_objdump_output(LISTING)["LoadGlobal"]
    assert load[0] == _ins(4, "ldr", "r0, [pc, #4]")
    assert load[3] == _ins(0xa, "nop")


def test_relocation_attached_to_previous_instruction():
    word = parse_objdump_output(LISTING)["LoadGlobal"][-1]
    assert word.mnemonic == ".word"
    assert word.relocation == "gCounter"


def test_parse_empty_listing():
    assert parse_objdump_output("") == {}


# ---------------------------------------------------------------------------
# Lowering
# ---------------------------------------------------------------------------

def test_branch_to_own_symbol_becomes_local_label():
    segments = lower_instruction(_ins(8, "b.n", "4 <LoadGlobal>"), "LoadGlobal")
    assert [s.tag for s in segments] == ["address", "opcode", "branch-dest", "eol"]
    assert segments[2].value == 4


def test_call_to_other_symbol_with_offset():
    segments = lower_instruction(_ins(0, "bl", "24 <Helper+0x4>"), "Main")
    assert [s.tag for s in segments] == ["address", "opcode", "symbol", "addend", "eol"]
    assert segments[2].value.name == "Helper"
    assert segments[3].value == 4


def test_relocation_overrides_unlinked_call_target():
    instruction = Instruction(0, "bl", "0 <Main>", relocation="Helper")
    segments = lower_instruction(instruction, "Main")
    assert segments[2].tag == "symbol"
    assert segments[2].value.name == "Helper"


def test_relocation_addend():
    instruction = Instruction(0, "ldr", "0 <Main>", relocation="gTable-0x4")
    segments = lower_instruction(instruction, "Main")
    assert segments[2].value.name == "gTable"
    assert segments[3].tag == "addend"
    assert segments[3].value == -4


def test_operand_numbers_split_out():
    segments = lower_instruction(_ins(6, "ldr", "r0, [r0, #0]"), "f")
    assert [(s.tag, s.value) for s in segments[2:-1]] == [
        ("opaque", "r0, [r0, "), ("basic", "#"), ("signed", 0), ("opaque", "]"),
    ]


def test_relocated_data_word_references_symbol():
    instruction = Instruction(0xc, ".word", "0x00000000", relocation="gCounter")
    tags = [s.tag for s in lower_instruction(instruction, "LoadGlobal")]
    assert tags == ["address", "opcode", "unsigned", "basic", "symbol", "basic", "eol"]


# ---------------------------------------------------------------------------
# Alignment
# ---------------------------------------------------------------------------

def test_align_equal_and_opcode_mismatch():
    left, right = align_instructions(
        [_ins(0, "adds", "r0, r0, r1"), _ins(2, "bx", "lr")],
        [_ins(0, "subs", "r0, r0, r1"), _ins(2, "bx", "lr")],
        "SimpleAdd",
    )
    assert _kinds(left) == [OP_MISMATCH, NONE]
    assert _kinds(right) == [OP_MISMATCH, NONE]


def test_align_argument_mismatch():
    left, _ = align_instructions([_ins(0, "adds", "r0, r0, r1")], [_ins(0, "adds", "r0, r0, r2")], "f")
    assert _kinds(left) == [ARG_MISMATCH]


def test_align_ignores_addresses_and_relative_branches():
    left, right = align_instructions(
        [_ins(0, "cmp", "r0, #0"), _ins(2, "beq.n", "0 <f>"), _ins(4, "bx", "lr")],
        [_ins(0x20, "cmp", "r0, #0"), _ins(0x22, "beq.n", "20 <f>"), _ins(0x24, "bx", "lr")],
        "f",
    )
    assert _kinds(left) == [NONE, NONE, NONE]
    assert _kinds(right) == [NONE, NONE, NONE]


def test_align_insertion_faces_blank_row():
    left, right = align_instructions(
        [_ins(0, "push", "{lr}"), _ins(2, "pop", "{pc}")],
        [_ins(0, "push", "{lr}"), _ins(2, "movs", "r0, #0"), _ins(4, "pop", "{pc}")],
        "f",
    )
    assert len(left) == len(right) == 3
    assert _kinds(right) == [NONE, INSERT, NONE]
    assert left[1].blank
    assert left[1].diff_kind == NONE


def test_align_deletion_faces_blank_row():
    left, right = align_instructions(
        [_ins(0, "push", "{lr}"), _ins(2, "lsls", "r0, r0, #2"), _ins(4, "pop", "{pc}")],
        [_ins(0, "push", "{lr}"), _ins(2, "pop", "{pc}")],
        "f",
    )
    assert _kinds(left) == [NONE, DELETE, NONE]
    assert right[1].blank


def test_align_uneven_replacement():
    left, right = align_instructions(
        [_ins(0, "movs", "r0, #1"), _ins(2, "lsls", "r0, r0, #2"), _ins(4, "bx", "lr")],
        [_ins(0, "ldr", "r0, [pc, #0]"), _ins(2, "bx", "lr")],
        "f",
    )
    assert _kinds(left) == [REPLACE, DELETE, NONE]
    assert _kinds(right) == [REPLACE, NONE, NONE]
    assert right[1].blank


# ---------------------------------------------------------------------------
# Whole-object diff
# ---------------------------------------------------------------------------

def _parsed(side, functions):
    return ParsedObject(f"/tmp/{side}.o", side, functions)


def test_diff_parsed_keeps_one_sided_symbols():
    left = _parsed(CURRENT, {"f": [_ins(0, "bx", "lr")], "extra": [_ins(0, "nop")]})
    right = _parsed(TARGET, {"f": [_ins(0, "bx", "lr")], "other": [_ins(0, "nop")]})
    current, target = diff_parsed(left, right)

    assert current.side == CURRENT
    assert target.side == TARGET
    assert current.symbol_names() == ["f", "extra"]
    assert target.symbol_names() == ["f", "other"]


def test_simple_add_end_to_end():
    functions = parse_objdump_output(LISTING)
    target_functions = dict(functions, SimpleAdd=[_ins(0, "subs", "r0, r0, r1"), _ins(2, "bx", "lr")])
    current, target = diff_parsed(_parsed(CURRENT, functions), _parsed(TARGET, target_functions))

    evaluator = AssemblyDiffEvaluator()
    mismatch = evaluator.evaluate(current, target, "SimpleAdd")
    assert mismatch.difference_count == 1
    assert mismatch.differences[0] == "Difference 1 (OPCODE_MISMATCH):"

    current, target = diff_parsed(_parsed(CURRENT, functions), _parsed(TARGET, functions))
    assert evaluator.evaluate(current, target, "SimpleAdd").difference_count == 0
    assert evaluator.evaluate(current, target, "LoadGlobal").is_match


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------

def test_missing_objdump_is_infrastructure_error(monkeypatch):
    monkeypatch.setattr("core.objdump.find_tool", lambda candidates: None)
    backend = ObjdumpBackend("gba")
    with pytest.raises(InfrastructureError, match="arm-none-eabi-objdump"):
        backend.objdump


def test_parse_object_missing_file(tmp_path):
    backend = ObjdumpBackend("gba")
    with pytest.raises(FileNotFoundError):
        backend.parse_object(str(tmp_path / "missing.o"))


def test_defined_symbols_from_nm(monkeypatch, tmp_path):
    obj = tmp_path / "t.o"
    obj.write_bytes(b"")
    monkeypatch.setattr("core.objdump.find_tool", lambda candidates: "/usr/bin/" + candidates[0])
    monkeypatch.setattr(
        "core.objdump.run_in_sandbox",
        lambda command, cwd, timeout=None: ("00000000 T SimpleAdd\n         U helper\n00000010 t local\n", "", 0),
    )
    assert ObjdumpBackend("gba").defined_symbols(str(obj)) == ["SimpleAdd", "local"]


def test_tool_failure_raises_runtime_error(monkeypatch, tmp_path):
    obj = tmp_path / "t.o"
    obj.write_bytes(b"")
    monkeypatch.setattr("core.objdump.find_tool", lambda candidates: "/usr/bin/" + candidates[0])
    monkeypatch.setattr(
        "core.objdump.run_in_sandbox",
        lambda command, cwd, timeout=None: ("", "file format not recognized", 1),
    )
    with pytest.raises(RuntimeError, match="file format not recognized"):
        ObjdumpBackend("gba").parse_object(str(obj))
