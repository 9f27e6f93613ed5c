"""ISA: machine constants, instruction decoding and helpers."""

from typing import NamedTuple

MEM_SIZE = 4096
PROGRAM_START = 0x200
MAX_ROM_SIZE = MEM_SIZE - PROGRAM_START  # 3584 bytes

NUM_REGISTERS = 16
FLAG_REG = 0xF
STACK_DEPTH = 16
NUM_KEYS = 16

SCREEN_WIDTH = 64
SCREEN_HEIGHT = 32

# Instruction size: two bytes, big-endian (high byte first).
INSTR_SIZE = 2

FONT_BASE = 0x050
FONT_GLYPH_SIZE = 5
FONT = bytes(
    [
        0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
        0x20, 0x60, 0x20, 0x20, 0x70,  # 1
        0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
        0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
        0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
        0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
        0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
        0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
        0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
        0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
        0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
        0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
        0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
        0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
        0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
        0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
    ]
)


class Instruction(NamedTuple):
    """A fetched word split into its nibble fields.

    op, x, y, n are the four nibbles from high to low; kk is the low byte
    and nnn the low 12 bits. raw keeps the undecoded word for fault reports.
    """

    op: int
    x: int
    y: int
    n: int
    kk: int
    nnn: int
    raw: int


def decode_word(word: int) -> Instruction:
    """Split a 16-bit instruction word into an Instruction."""
    word &= 0xFFFF
    return Instruction(
        op=(word >> 12) & 0xF,
        x=(word >> 8) & 0xF,
        y=(word >> 4) & 0xF,
        n=word & 0xF,
        kk=word & 0xFF,
        nnn=word & 0xFFF,
        raw=word,
    )


def decode_instr(blob: bytes | bytearray, offset: int) -> Instruction:
    """Decode the big-endian instruction word at offset.

    Both bytes are read modulo the address space, so a fetch at 0xFFF
    takes its low byte from address 0.
    """
    hi = blob[offset % MEM_SIZE]
    lo = blob[(offset + 1) % MEM_SIZE]
    return decode_word((hi << 8) | lo)


def font_address(digit: int) -> int:
    """Address of the 5-byte glyph for the low nibble of digit."""
    return FONT_BASE + FONT_GLYPH_SIZE * (digit & 0xF)


_ALU_NAMES = {0x0: "LD", 0x1: "OR", 0x2: "AND", 0x3: "XOR", 0x4: "ADD", 0x5: "SUB", 0x7: "SUBN"}

_F_NAMES = {
    0x07: "LD V{x:X}, DT",
    0x0A: "LD V{x:X}, K",
    0x15: "LD DT, V{x:X}",
    0x18: "LD ST, V{x:X}",
    0x1E: "ADD I, V{x:X}",
    0x29: "LD F, V{x:X}",
    0x33: "LD B, V{x:X}",
    0x55: "LD [I], V{x:X}",
    0x65: "LD V{x:X}, [I]",
}


def mnemonic(instr: Instruction) -> str:  # noqa: C901
    """Get operation mnemonic for trace lines. Undefined words give DW."""
    op, x, y, n, kk, nnn = instr.op, instr.x, instr.y, instr.n, instr.kk, instr.nnn
    if instr.raw == 0x00E0:
        return "CLS"
    if instr.raw == 0x00EE:
        return "RET"
    if op == 0x0:
        return f"SYS {nnn:03X}"
    if op == 0x1:
        return f"JP {nnn:03X}"
    if op == 0x2:
        return f"CALL {nnn:03X}"
    if op == 0x3:
        return f"SE V{x:X}, {kk:02X}"
    if op == 0x4:
        return f"SNE V{x:X}, {kk:02X}"
    if op == 0x5 and n == 0:
        return f"SE V{x:X}, V{y:X}"
    if op == 0x6:
        return f"LD V{x:X}, {kk:02X}"
    if op == 0x7:
        return f"ADD V{x:X}, {kk:02X}"
    if op == 0x8 and n in _ALU_NAMES:
        return f"{_ALU_NAMES[n]} V{x:X}, V{y:X}"
    if op == 0x8 and n == 0x6:
        return f"SHR V{x:X}, V{y:X}"
    if op == 0x8 and n == 0xE:
        return f"SHL V{x:X}, V{y:X}"
    if op == 0x9 and n == 0:
        return f"SNE V{x:X}, V{y:X}"
    if op == 0xA:
        return f"LD I, {nnn:03X}"
    if op == 0xB:
        return f"JP V0, {nnn:03X}"
    if op == 0xC:
        return f"RND V{x:X}, {kk:02X}"
    if op == 0xD:
        return f"DRW V{x:X}, V{y:X}, {n:X}"
    if op == 0xE and kk == 0x9E:
        return f"SKP V{x:X}"
    if op == 0xE and kk == 0xA1:
        return f"SKNP V{x:X}"
    if op == 0xF and kk in _F_NAMES:
        return _F_NAMES[kk].format(x=x)
    return f"DW {instr.raw:04X}"
