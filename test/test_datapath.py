"""Memory, registers, timers, frame buffer, keypad and the key-wait state."""

from __future__ import annotations

from typing import Any

import pytest
from datapath import Datapath, FrameBuffer, InputState, Memory, RegisterFile, Timers
from faults import LoadError, ROMTooLarge, StackOverflow, StackUnderflow
from isa import FONT, FONT_BASE, MAX_ROM_SIZE, MEM_SIZE, PROGRAM_START, SCREEN_HEIGHT, SCREEN_WIDTH
from processor import CycleEvent, MachineState, Processor


def test_memory_seeds_font_and_wraps_addresses() -> None:
    mem = Memory()
    assert mem.read_block(FONT_BASE, len(FONT)) == FONT
    mem.write_byte(MEM_SIZE + 0x10, 0x1FF)
    assert mem.read_byte(0x10) == 0xFF
    mem.write_byte(MEM_SIZE - 1, 0xAB)
    assert mem.read_block(MEM_SIZE - 1, 2) == bytes([0xAB, 0x00])


def test_memory_writes_skip_font_table() -> None:
    mem = Memory()
    mem.write_byte(FONT_BASE, 0x00)
    mem.write_byte(FONT_BASE + len(FONT) - 1, 0x00)
    mem.write_byte(MEM_SIZE + FONT_BASE + 3, 0x00)
    assert mem.read_block(FONT_BASE, len(FONT)) == FONT
    mem.write_byte(FONT_BASE - 1, 0x42)
    mem.write_byte(FONT_BASE + len(FONT), 0x24)
    assert mem.read_byte(FONT_BASE - 1) == 0x42
    assert mem.read_byte(FONT_BASE + len(FONT)) == 0x24


def test_load_places_rom_and_keeps_font() -> None:
    dp = Datapath()
    dp.regs.V[3] = 9
    dp.timers.delay = 4
    dp.load(b"\x12\x34\x56")
    assert dp.memory.read_block(PROGRAM_START, 3) == b"\x12\x34\x56"
    assert dp.memory.read_block(FONT_BASE, len(FONT)) == FONT
    assert dp.regs.PC == PROGRAM_START
    assert dp.regs.V[3] == 0
    assert dp.timers.delay == 0


def test_largest_rom_fits() -> None:
    dp = Datapath()
    dp.load(bytes([0xAA]) * MAX_ROM_SIZE)
    assert dp.memory.read_byte(MEM_SIZE - 1) == 0xAA


def test_rom_too_large_leaves_machine_untouched() -> None:
    proc = Processor()
    proc.load(b"\x6A\x01")
    proc.step()
    with pytest.raises(ROMTooLarge) as excinfo:
        proc.load(bytes(MAX_ROM_SIZE + 1))
    assert isinstance(excinfo.value, LoadError)
    assert excinfo.value.size == MAX_ROM_SIZE + 1
    assert excinfo.value.capacity == 3584
    assert proc.snapshot()["registers"][0xA] == 1
    assert proc.snapshot()["PC"] == PROGRAM_START + 2


def test_stack_bounds() -> None:
    regs = RegisterFile()
    for i in range(16):
        regs.push(0x200 + 2 * i, pc=0x200)
    assert regs.SP == 16
    with pytest.raises(StackOverflow):
        regs.push(0x300, pc=0x200)
    for i in reversed(range(16)):
        assert regs.pop(pc=0x200) == 0x200 + 2 * i
    with pytest.raises(StackUnderflow):
        regs.pop(pc=0x200)
    assert regs.SP == 0


def test_timers_never_go_below_zero() -> None:
    timers = Timers()
    timers.delay = 2
    timers.sound = 1
    for _ in range(5):
        timers.tick()
        assert timers.delay >= 0
        assert timers.sound >= 0
    assert timers.delay == 0
    assert timers.sound == 0
    assert not timers.sound_active
    timers.tick()
    assert timers.delay == 0


def test_tick_timers_is_independent_of_steps(rom_words: Any) -> None:
    proc = Processor()
    proc.load(rom_words(0x6010, 0xF015, 0x1204))
    for _ in range(50):
        proc.step()
    assert proc.snapshot()["delay_timer"] == 0x10
    proc.tick_timers()
    assert proc.snapshot()["delay_timer"] == 0x0F


def test_draw_origin_wraps_but_pixels_clip() -> None:
    fb = FrameBuffer()
    collision = fb.draw_sprite(SCREEN_WIDTH + 2, SCREEN_HEIGHT + 30, bytes([0x80, 0x80, 0x80]))
    assert not collision
    assert fb.pixel(2, 30) == 1
    assert fb.pixel(2, 31) == 1
    assert fb.pixel(2, 0) == 0
    assert fb.lit_count() == 2


def test_draw_wraps_rows_when_not_clipping() -> None:
    fb = FrameBuffer()
    fb.draw_sprite(0, 30, bytes([0x80, 0x80, 0x80]), clip=False)
    assert fb.pixel(0, 30) == 1
    assert fb.pixel(0, 31) == 1
    assert fb.pixel(0, 0) == 1


def test_collision_is_sticky_within_a_draw() -> None:
    fb = FrameBuffer()
    fb.draw_sprite(0, 0, bytes([0x80]))
    # first row collides, second row lands on a blank pixel
    assert fb.draw_sprite(0, 0, bytes([0x80, 0x80]))
    assert fb.pixel(0, 0) == 0
    assert fb.pixel(0, 1) == 1


def test_frame_buffer_view_is_read_only_and_live(rom_words: Any) -> None:
    proc = Processor()
    proc.load(rom_words(0xD015))
    view = proc.frame_buffer()
    assert view.shape == (SCREEN_HEIGHT, SCREEN_WIDTH)
    with pytest.raises(TypeError):
        view[0, 0] = 1
    assert proc.take_dirty()
    assert not proc.take_dirty()
    proc.dp.regs.I = FONT_BASE
    proc.step()
    assert proc.take_dirty()
    assert view[0, 0] == 1
    proc.reset()
    assert view[0, 0] == 0
    assert proc.frame_buffer()[0, 0] == 0


def test_clear_screen(rom_words: Any) -> None:
    proc = Processor()
    proc.load(rom_words(0xD015, 0x00E0))
    proc.dp.regs.I = FONT_BASE
    proc.step()
    assert proc.dp.screen.lit_count() > 0
    proc.take_dirty()
    proc.step()
    assert proc.dp.screen.lit_count() == 0
    assert proc.take_dirty()


def test_input_edges() -> None:
    keys = InputState()
    keys.set_key(3, True)
    keys.set_key(3, True)
    assert keys.is_pressed(3)
    assert keys.take_edge() == 3
    assert keys.take_edge() is None
    keys.set_key(3, False)
    keys.set_key(3, True)
    keys.set_key(1, True)
    assert keys.take_edge() == 1
    with pytest.raises(ValueError):
        keys.set_key(16, True)


def test_wait_for_key_suspends_until_press_edge(rom_words: Any) -> None:
    proc = Processor()
    proc.load(rom_words(0xF30A, 0x6101))
    assert proc.step() is CycleEvent.AWAITING_KEY
    assert proc.state is MachineState.AWAITING_KEY
    for _ in range(5):
        assert proc.step() is CycleEvent.AWAITING_KEY
        assert proc.snapshot()["PC"] == PROGRAM_START
    proc.set_key(0xC, True)
    assert proc.step() is CycleEvent.CONTINUED
    assert proc.state is MachineState.RUNNING
    snap = proc.snapshot()
    assert snap["registers"][3] == 0xC
    assert snap["PC"] == PROGRAM_START + 2
    proc.step()
    assert proc.snapshot()["registers"][1] == 1


def test_wait_ignores_key_held_before_wait(rom_words: Any) -> None:
    proc = Processor()
    proc.load(rom_words(0xF00A))
    proc.set_key(4, True)
    assert proc.step() is CycleEvent.AWAITING_KEY
    proc.set_key(4, True)
    assert proc.step() is CycleEvent.AWAITING_KEY
    proc.set_key(4, False)
    assert proc.step() is CycleEvent.AWAITING_KEY
    proc.set_key(4, True)
    assert proc.step() is CycleEvent.CONTINUED
    assert proc.snapshot()["registers"][0] == 4


def test_reset_leaves_wait(rom_words: Any) -> None:
    proc = Processor()
    proc.load(rom_words(0xF00A))
    proc.step()
    proc.reset()
    assert proc.state is MachineState.RUNNING
