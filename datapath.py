"""Datapath: memory, registers, timers, frame buffer and keypad state.

These are passive containers; the control unit in processor.py is the only
thing that sequences them.
"""

from __future__ import annotations

import logging

from faults import ROMTooLarge, StackOverflow, StackUnderflow
from isa import (
    FLAG_REG,
    FONT,
    FONT_BASE,
    MAX_ROM_SIZE,
    MEM_SIZE,
    NUM_KEYS,
    NUM_REGISTERS,
    PROGRAM_START,
    SCREEN_HEIGHT,
    SCREEN_WIDTH,
    STACK_DEPTH,
)


class Memory:
    """Flat 4 KB byte store with the font table seeded at FONT_BASE."""

    data: bytearray

    def __init__(self) -> None:
        self.data = bytearray(MEM_SIZE)
        self.reset()

    def reset(self) -> None:
        self.data[:] = bytes(MEM_SIZE)
        self.data[FONT_BASE : FONT_BASE + len(FONT)] = FONT

    def read_byte(self, addr: int) -> int:
        return self.data[addr % MEM_SIZE]

    def write_byte(self, addr: int, value: int) -> None:
        """Store one byte. Writes that land in the font table are dropped."""
        addr %= MEM_SIZE
        if FONT_BASE <= addr < FONT_BASE + len(FONT):
            logging.debug("Write to font table at %03X ignored", addr)
            return
        self.data[addr] = value & 0xFF

    def read_block(self, addr: int, length: int) -> bytes:
        """Read `length` bytes from addr, wrapping at the top of memory."""
        return bytes(self.data[(addr + i) % MEM_SIZE] for i in range(length))

    def load_program(self, rom: bytes) -> None:
        """Copy rom verbatim to PROGRAM_START.

        Raises ROMTooLarge when it does not fit below the top of memory.
        """
        if len(rom) > MAX_ROM_SIZE:
            raise ROMTooLarge(len(rom), MAX_ROM_SIZE)
        self.data[PROGRAM_START : PROGRAM_START + len(rom)] = rom


class RegisterFile:
    """V0..VF, the index register, the program counter and the call stack."""

    V: bytearray
    I: int  # noqa: E741
    PC: int
    SP: int
    stack: list[int]

    def __init__(self) -> None:
        self.V = bytearray(NUM_REGISTERS)
        self.reset()

    def reset(self) -> None:
        self.V[:] = bytes(NUM_REGISTERS)
        self.I = 0
        self.PC = PROGRAM_START
        self.SP = 0
        self.stack = [0] * STACK_DEPTH

    @property
    def VF(self) -> int:
        return self.V[FLAG_REG]

    @VF.setter
    def VF(self, value: int) -> None:
        self.V[FLAG_REG] = value & 0xFF

    def push(self, addr: int, pc: int) -> None:
        """Push a return address.

        Raises StackOverflow, reporting pc, when all slots are in use.
        """
        if self.SP >= STACK_DEPTH:
            raise StackOverflow(pc)
        self.stack[self.SP] = addr & 0xFFF
        self.SP += 1

    def pop(self, pc: int) -> int:
        """Pop a return address. Raises StackUnderflow, reporting pc, when empty."""
        if self.SP == 0:
            raise StackUnderflow(pc)
        self.SP -= 1
        return self.stack[self.SP]


class Timers:
    """Delay and sound counters, decremented by tick() at 60 Hz."""

    delay: int
    sound: int

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.delay = 0
        self.sound = 0

    def tick(self) -> None:
        if self.delay > 0:
            self.delay -= 1
        if self.sound > 0:
            self.sound -= 1

    @property
    def sound_active(self) -> bool:
        return self.sound > 0


class FrameBuffer:
    """64x32 one-bit pixels stored row-major, one byte per pixel."""

    pixels: bytearray
    dirty: bool

    def __init__(self) -> None:
        self.pixels = bytearray(SCREEN_WIDTH * SCREEN_HEIGHT)
        self.dirty = True

    def clear(self) -> None:
        self.pixels[:] = bytes(len(self.pixels))
        self.dirty = True

    def pixel(self, x: int, y: int) -> int:
        return self.pixels[y * SCREEN_WIDTH + x]

    def draw_sprite(self, x: int, y: int, sprite: bytes, clip: bool = True) -> bool:
        """XOR sprite rows onto the frame with origin (x, y).

        The origin wraps to the frame; pixels past the right or bottom edge
        are dropped when clip is set and wrap around otherwise. Returns True
        if any lit pixel was turned off.
        """
        x %= SCREEN_WIDTH
        y %= SCREEN_HEIGHT
        collision = False
        for row, bits in enumerate(sprite):
            py = y + row
            if py >= SCREEN_HEIGHT:
                if clip:
                    break
                py %= SCREEN_HEIGHT
            for col in range(8):
                if not bits & (0x80 >> col):
                    continue
                px = x + col
                if px >= SCREEN_WIDTH:
                    if clip:
                        break
                    px %= SCREEN_WIDTH
                idx = py * SCREEN_WIDTH + px
                if self.pixels[idx]:
                    collision = True
                self.pixels[idx] ^= 1
        self.dirty = True
        return collision

    def view(self) -> memoryview:
        """Read-only (height, width) view; index as view[y, x]."""
        return memoryview(self.pixels).cast("B", (SCREEN_HEIGHT, SCREEN_WIDTH)).toreadonly()

    def lit_count(self) -> int:
        return sum(self.pixels)

    def to_text(self, on: str = "#", off: str = ".") -> str:
        lines = []
        for y in range(SCREEN_HEIGHT):
            row = self.pixels[y * SCREEN_WIDTH : (y + 1) * SCREEN_WIDTH]
            lines.append("".join(on if p else off for p in row))
        return "\n".join(lines)


class InputState:
    """Levels of the 16 keypad keys plus a latch of press edges."""

    keys: list[bool]
    pressed_edges: set[int]

    def __init__(self) -> None:
        self.keys = [False] * NUM_KEYS
        self.pressed_edges = set()

    def reset(self) -> None:
        self.keys[:] = [False] * NUM_KEYS
        self.pressed_edges.clear()

    def set_key(self, index: int, pressed: bool) -> None:
        if not 0 <= index < NUM_KEYS:
            msg = f"key index {index} out of range 0..{NUM_KEYS - 1}"
            raise ValueError(msg)
        if pressed and not self.keys[index]:
            self.pressed_edges.add(index)
        self.keys[index] = bool(pressed)

    def is_pressed(self, index: int) -> bool:
        return self.keys[index & 0xF]

    def clear_edges(self) -> None:
        self.pressed_edges.clear()

    def take_edge(self) -> int | None:
        """Pop the lowest key pressed since the last clear, if any."""
        if not self.pressed_edges:
            return None
        key = min(self.pressed_edges)
        self.pressed_edges.clear()
        return key


class Datapath:
    """Single owner of all machine state for one VM instance."""

    memory: Memory
    regs: RegisterFile
    timers: Timers
    screen: FrameBuffer
    keypad: InputState

    def __init__(self) -> None:
        self.memory = Memory()
        self.regs = RegisterFile()
        self.timers = Timers()
        self.screen = FrameBuffer()
        self.keypad = InputState()

    def reset(self) -> None:
        """Return every component to its power-on state, in place."""
        self.memory.reset()
        self.regs.reset()
        self.timers.reset()
        self.screen.clear()
        self.keypad.reset()
        logging.debug("Datapath: reset, PC=%03X", self.regs.PC)

    def load(self, rom: bytes) -> None:
        """Reset and place rom at PROGRAM_START.

        The size check runs first so an oversized ROM leaves the
        current state untouched.
        """
        if len(rom) > MAX_ROM_SIZE:
            raise ROMTooLarge(len(rom), MAX_ROM_SIZE)
        self.reset()
        self.memory.load_program(rom)
        logging.debug("Datapath: loaded %d ROM bytes at %03X", len(rom), PROGRAM_START)
