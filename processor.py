"""Processor (ControlUnit + host surface) and CLI wrapper.

Provides the fetch/decode/execute core, the host frame loop, logging
initialization and an optional memory dump emitted when debug logging
is enabled.
"""

from __future__ import annotations

import argparse
import logging
import random
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Any

from config import ConfigError, load_config
from datapath import Datapath
from faults import Fault, LoadError, UnknownOpcode
from isa import FLAG_REG, INSTR_SIZE, MEM_SIZE, Instruction, decode_instr, font_address, mnemonic

LOGFILE = "processor.log"


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level. If console=True also echo logs to stdout.
    In debug mode a compact format without timestamps is used, e.g.:
        DEBUG root:processor.py:210 STATE: RUNNING STEP: EXECUTION PC: 202 ...
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.CRITICAL
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-5s %(message)s"

    fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter(file_fmt))
    root.addHandler(fh)

    if debug and console:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


class CycleEvent(Enum):
    """What a single step() did, for the host loop."""

    CONTINUED = "continued"
    AWAITING_KEY = "awaiting_key"
    HALTED = "halted"


class MachineState(Enum):
    RUNNING = "running"
    AWAITING_KEY = "awaiting_key"
    HALTED = "halted"


class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC cycle for the Datapath."""

    dp: Datapath
    quirks: dict[str, bool]
    seed: int | None
    lenient_log: bool
    rng: random.Random
    state: MachineState
    wait_register: int
    fetch_pc: int

    def __init__(
        self,
        dp: Datapath,
        quirks: dict[str, bool] | None = None,
        seed: int | None = None,
        lenient_log: bool = False,
    ) -> None:
        """Create a ControlUnit bound to `dp`."""
        self.dp = dp
        self.quirks = load_config({"quirks": quirks})["quirks"]
        self.seed = seed
        self.lenient_log = bool(lenient_log)
        self.reset()

    def reset(self) -> None:
        """Leave any wait or halt and reseed the random source."""
        self.rng = random.Random(self.seed)
        self.state = MachineState.RUNNING
        self.wait_register = 0
        self.fetch_pc = self.dp.regs.PC

    def _log_step(self, step: str, instr: Instruction) -> None:
        # skip verbose per-step logs in lenient mode to reduce log size
        if self.lenient_log:
            return
        regs = self.dp.regs
        timers = self.dp.timers
        left = f"STATE: {self.state.name:<12} STEP: {step:<10} PC: {regs.PC:03X} "
        right = (
            f"I: {regs.I:03X} SP: {regs.SP:2d} DT: {timers.delay:3d} ST: {timers.sound:3d} "
            f"V: {regs.V.hex(' ').upper()}\tINSTR: {mnemonic(instr)}"
        )
        logging.debug(left + right)

    def step(self) -> CycleEvent:
        """Run one cycle.

        Returns the CycleEvent for the host. A Fault raised by the
        instruction halts this machine and propagates to the caller;
        later calls return CycleEvent.HALTED without doing anything.
        """
        if self.state is MachineState.HALTED:
            return CycleEvent.HALTED
        if self.state is MachineState.AWAITING_KEY:
            return self._poll_key()

        dp = self.dp
        self.fetch_pc = dp.regs.PC
        instr = decode_instr(dp.memory.data, self.fetch_pc)
        self._log_step("FETCH", instr)

        dp.regs.PC = (dp.regs.PC + INSTR_SIZE) & 0xFFF
        try:
            self.exec(instr)
        except Fault as e:
            self.state = MachineState.HALTED
            logging.error("Fault at PC %03X: %s -> HALT", self.fetch_pc, e)
            raise

        self._log_step("EXECUTION", instr)
        if self.state is MachineState.AWAITING_KEY:
            return CycleEvent.AWAITING_KEY
        return CycleEvent.CONTINUED

    def _poll_key(self) -> CycleEvent:
        """Resolve a pending key wait on a press edge; PC stays put otherwise."""
        dp = self.dp
        key = dp.keypad.take_edge()
        if key is None:
            return CycleEvent.AWAITING_KEY
        dp.regs.V[self.wait_register] = key
        dp.regs.PC = (dp.regs.PC + INSTR_SIZE) & 0xFFF
        logging.debug("Key %X pressed -> V%X, resume at %03X", key, self.wait_register, dp.regs.PC)
        self.state = MachineState.RUNNING
        return CycleEvent.CONTINUED

    def _skip_if(self, cond: bool) -> None:
        if cond:
            self.dp.regs.PC = (self.dp.regs.PC + INSTR_SIZE) & 0xFFF

    def exec(self, instr: Instruction) -> None:  # noqa: C901
        """Execute a single decoded instruction (hardwired control unit)."""
        dp = self.dp
        regs = dp.regs
        V = regs.V
        op, x, y, n, kk, nnn = instr.op, instr.x, instr.y, instr.n, instr.kk, instr.nnn

        if op == 0x0:
            if instr.raw == 0x00E0:
                dp.screen.clear()
                return
            if instr.raw == 0x00EE:
                regs.PC = regs.pop(self.fetch_pc)
                return
            # SYS nnn: COSMAC VIP machine-code call, ignored here
            return
        if op == 0x1:
            regs.PC = nnn
            return
        if op == 0x2:
            regs.push(regs.PC, self.fetch_pc)
            regs.PC = nnn
            return
        if op == 0x3:
            self._skip_if(V[x] == kk)
            return
        if op == 0x4:
            self._skip_if(V[x] != kk)
            return
        if op == 0x5 and n == 0x0:
            self._skip_if(V[x] == V[y])
            return
        if op == 0x6:
            V[x] = kk
            return
        if op == 0x7:
            V[x] = (V[x] + kk) & 0xFF
            return
        if op == 0x8 and (n <= 0x7 or n == 0xE):
            self._exec_alu(x, y, n)
            return
        if op == 0x9 and n == 0x0:
            self._skip_if(V[x] != V[y])
            return
        if op == 0xA:
            regs.I = nnn
            return
        if op == 0xB:
            regs.PC = (V[0] + nnn) & 0xFFF
            return
        if op == 0xC:
            V[x] = self.rng.getrandbits(8) & kk
            return
        if op == 0xD:
            sprite = dp.memory.read_block(regs.I, n)
            collision = dp.screen.draw_sprite(V[x], V[y], sprite, clip=self.quirks["clip_sprites"])
            regs.VF = 1 if collision else 0
            return
        if op == 0xE and kk == 0x9E:
            self._skip_if(dp.keypad.is_pressed(V[x]))
            return
        if op == 0xE and kk == 0xA1:
            self._skip_if(not dp.keypad.is_pressed(V[x]))
            return
        if op == 0xF:
            if self._exec_misc(x, kk):
                return

        raise UnknownOpcode(instr.raw, self.fetch_pc)

    def _exec_alu(self, x: int, y: int, n: int) -> None:  # noqa: C901
        """8xyN register-register operations. VF is written after Vx."""
        V = self.dp.regs.V
        vx, vy = V[x], V[y]
        if n == 0x0:
            V[x] = vy
        elif n == 0x1:
            V[x] = vx | vy
        elif n == 0x2:
            V[x] = vx & vy
        elif n == 0x3:
            V[x] = vx ^ vy
        elif n == 0x4:
            total = vx + vy
            V[x] = total & 0xFF
            V[FLAG_REG] = 1 if total > 0xFF else 0
        elif n == 0x5:
            V[x] = (vx - vy) & 0xFF
            V[FLAG_REG] = self._no_borrow(vx, vy)
        elif n == 0x7:
            V[x] = (vy - vx) & 0xFF
            V[FLAG_REG] = self._no_borrow(vy, vx)
        elif n == 0x6:
            src = vy if self.quirks["shift_uses_vy"] else vx
            V[x] = src >> 1
            V[FLAG_REG] = src & 0x1
        else:  # 0xE
            src = vy if self.quirks["shift_uses_vy"] else vx
            V[x] = (src << 1) & 0xFF
            V[FLAG_REG] = src >> 7

    def _no_borrow(self, minuend: int, subtrahend: int) -> int:
        flag = 1 if minuend >= subtrahend else 0
        if self.quirks["borrow_flag_inverted"]:
            flag ^= 1
        return flag

    def _exec_misc(self, x: int, kk: int) -> bool:  # noqa: C901
        """Fxkk timer, key-wait and index operations. False if kk is undefined."""
        dp = self.dp
        regs = dp.regs
        V = regs.V
        mem = dp.memory

        if kk == 0x07:
            V[x] = dp.timers.delay
        elif kk == 0x0A:
            # park on this instruction; only a press edge after now resumes
            regs.PC = self.fetch_pc
            dp.keypad.clear_edges()
            self.state = MachineState.AWAITING_KEY
            self.wait_register = x
            logging.debug("Waiting for key -> V%X at PC %03X", x, self.fetch_pc)
        elif kk == 0x15:
            dp.timers.delay = V[x]
        elif kk == 0x18:
            dp.timers.sound = V[x]
        elif kk == 0x1E:
            total = regs.I + V[x]
            regs.I = total & 0xFFF
            if self.quirks["index_overflow_flag"]:
                V[FLAG_REG] = 1 if total > 0xFFF else 0
        elif kk == 0x29:
            regs.I = font_address(V[x])
        elif kk == 0x33:
            value = V[x]
            mem.write_byte(regs.I, value // 100)
            mem.write_byte(regs.I + 1, (value // 10) % 10)
            mem.write_byte(regs.I + 2, value % 10)
        elif kk == 0x55:
            for i in range(x + 1):
                mem.write_byte(regs.I + i, V[i])
            self._post_load_store(x)
        elif kk == 0x65:
            for i in range(x + 1):
                V[i] = mem.read_byte(regs.I + i)
            self._post_load_store(x)
        else:
            return False
        return True

    def _post_load_store(self, x: int) -> None:
        if self.quirks["load_store_increments_index"]:
            self.dp.regs.I = (self.dp.regs.I + x + 1) & 0xFFF


class Processor:
    """One VM instance: the surface a host (window, keyboard, audio) drives."""

    cfg: dict[str, Any]
    dp: Datapath
    cu: ControlUnit

    def __init__(self, config: str | dict[str, Any] | None = None) -> None:
        self.cfg = load_config(config)
        self.dp = Datapath()
        self.cu = ControlUnit(
            self.dp,
            quirks=self.cfg["quirks"],
            seed=self.cfg["seed"],
            lenient_log=self.cfg["lenient_log"],
        )

    @property
    def state(self) -> MachineState:
        return self.cu.state

    @property
    def sound_active(self) -> bool:
        return self.dp.timers.sound_active

    def reset(self) -> None:
        self.dp.reset()
        self.cu.reset()

    def load(self, rom: bytes) -> None:
        """Reset and load rom. Raises ROMTooLarge without touching the machine."""
        self.dp.load(bytes(rom))
        self.cu.reset()

    def step(self) -> CycleEvent:
        return self.cu.step()

    def tick_timers(self) -> None:
        self.dp.timers.tick()

    def set_key(self, index: int, pressed: bool) -> None:
        self.dp.keypad.set_key(index, pressed)

    def frame_buffer(self) -> memoryview:
        return self.dp.screen.view()

    def take_dirty(self) -> bool:
        """Return and clear the frame buffer's dirty flag."""
        dirty = self.dp.screen.dirty
        self.dp.screen.dirty = False
        return dirty

    def snapshot(self) -> dict[str, Any]:
        regs = self.dp.regs
        return {
            "registers": list(regs.V),
            "I": regs.I,
            "PC": regs.PC,
            "SP": regs.SP,
            "delay_timer": self.dp.timers.delay,
            "sound_timer": self.dp.timers.sound,
        }


# (frame, key, pressed)
KeyEvent = tuple[int, int, bool]


def run_frames(
    proc: Processor,
    frames: int,
    schedule: list[KeyEvent] | None = None,
    realtime: bool = False,
) -> tuple[int, int, Fault | None]:
    """Drive the host loop for `frames` frames.

    Each frame applies that frame's key events, runs a burst of
    cycles_per_frame steps, ticks the timers once and counts a render when
    the frame buffer is dirty. Stops early on a fault.

    Returns (frames_run, renders, fault).
    """
    pending = sorted(schedule or [], key=lambda ev: ev[0])
    burst = proc.cfg["cycles_per_frame"]
    period = 1.0 / proc.cfg["frame_rate"]
    renders = 0
    frame = 0
    while frame < frames:
        started = time.perf_counter()
        while pending and pending[0][0] <= frame:
            _, key, pressed = pending.pop(0)
            proc.set_key(key, pressed)
            logging.debug("[frame %d] key %X %s", frame, key, "down" if pressed else "up")

        try:
            for _ in range(burst):
                if proc.step() is CycleEvent.HALTED:
                    break
        except Fault as e:
            logging.debug("[frame %d] stopped by fault: %s", frame, e)
            return frame + 1, renders, e

        proc.tick_timers()
        if proc.take_dirty():
            renders += 1
        frame += 1

        if realtime:
            remaining = period - (time.perf_counter() - started)
            if remaining > 0:
                time.sleep(remaining)
    return frame, renders, None


def parse_key_schedule(path: str) -> list[KeyEvent]:
    """Parse schedule file with lines "<frame> <key-hex> <down|up>".

    Blank lines and lines starting with '#' are skipped.
    """
    result: list[KeyEvent] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) != 3 or parts[2].lower() not in ("down", "up"):
                err = f"Bad schedule line: {line!r}"
                raise ValueError(err)
            try:
                frame = int(parts[0])
                key = int(parts[1], 16)
            except ValueError as e:
                err = f"Bad schedule line (bad frame or key): {line!r}"
                raise ValueError(err) from e
            if frame < 0 or not 0 <= key <= 0xF:
                err = f"Bad schedule line (out of range): {line!r}"
                raise ValueError(err)
            result.append((frame, key, parts[2].lower() == "down"))
    return result


def _dump_memory_to_file(dp: Datapath, path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        for base in range(0, MEM_SIZE, 16):
            chunk = dp.memory.data[base : base + 16]
            f.write(f"{base:03X}: {chunk.hex(' ').upper()}\n")


def run_bytes(
    rom: bytes,
    config: str | dict[str, Any] | None,
    schedule: list[KeyEvent] | None = None,
    frames: int | None = None,
    realtime: bool = False,
) -> tuple[str, int, str]:
    """Load rom, run it headless and return (screen_text, frames_run, state)."""
    proc = Processor(config)
    proc.load(rom)
    if frames is None:
        frames = proc.cfg["frame_limit"]
    frames_run, renders, fault = run_frames(proc, frames, schedule, realtime=realtime)
    logging.debug("Ran %d frames, %d renders", frames_run, renders)

    if logging.getLogger().getEffectiveLevel() == logging.DEBUG:
        try:
            _dump_memory_to_file(proc.dp, "memory_dump.txt")
        except OSError as e:
            logging.debug("Failed to write memory_dump.txt: %s", e)

    state = f"fault: {type(fault).__name__}" if fault is not None else proc.state.value
    return proc.dp.screen.to_text(), frames_run, state


# ---------- CLI ----------
def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        description="Headless VM runner. Runs a raw ROM image for a number of frames "
        "and prints the final frame buffer. Key presses come from --keys."
    )
    ap.add_argument("rom", help="raw ROM image, loaded at 0x200")
    ap.add_argument("--frames", type=int, default=None, help="frames to run (default: config frame_limit)")
    ap.add_argument(
        "--keys",
        help="key schedule file. Each non-empty line: '<frame> <key-hex> <down|up>'",
        default=None,
    )
    ap.add_argument("--config", help="path to yaml config", default=None)
    ap.add_argument("--realtime", action="store_true", help="pace frames at config frame_rate")

    help_debug = "enable debug logging to logfile (detailed per-step state)."
    help_logfile = "path to processor log"
    help_console = "also echo logs to console (only when --debug)"
    ap.add_argument("--debug", action="store_true", help=help_debug)
    ap.add_argument("--logfile", default=LOGFILE, help=help_logfile)
    ap.add_argument("--console", action="store_true", help=help_console)
    args = ap.parse_args(argv)

    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print("Bad config:", e)
        return 2

    sched: list[KeyEvent] = []
    if args.keys:
        if not Path(args.keys).exists():
            print("Key schedule file not found:", args.keys)
            return 2
        try:
            sched = parse_key_schedule(args.keys)
            logging.debug("CLI: parsed schedule from %s: %r", args.keys, sched)
        except ValueError:
            logging.exception("Failed to parse --keys: %s", args.keys)
            print("Bad key schedule:", args.keys)
            return 2

    rom_path = Path(args.rom)
    if not rom_path.exists():
        print("ROM file not found:", args.rom)
        return 2

    try:
        screen, frames, state = run_bytes(rom_path.read_bytes(), cfg, sched, args.frames, args.realtime)
    except LoadError as e:
        print("Cannot load ROM:", e)
        return 2

    sys.stdout.write(screen)
    sys.stdout.write("\n")
    sys.stdout.write("FRAMES: " + str(frames))
    sys.stdout.write("\n")
    sys.stdout.write("STATE: " + state)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
