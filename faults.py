"""Execution faults and load-time errors raised by the VM core."""

from __future__ import annotations


class Fault(Exception):
    """Fatal execution fault. Halts the machine that raised it."""

    pass


class UnknownOpcode(Fault):
    """Raised when an instruction word matches no defined encoding."""

    def __init__(self, instruction: int, pc: int) -> None:
        self.instruction = instruction
        self.pc = pc
        super().__init__(f"Unknown opcode {instruction:04X} at PC {pc:03X}")


class StackOverflow(Fault):
    """Raised by CALL when all 16 stack slots are in use."""

    def __init__(self, pc: int) -> None:
        self.pc = pc
        super().__init__(f"Call stack overflow at PC {pc:03X}")


class StackUnderflow(Fault):
    """Raised by RET on an empty call stack."""

    def __init__(self, pc: int) -> None:
        self.pc = pc
        super().__init__(f"Call stack underflow at PC {pc:03X}")


class LoadError(Exception):
    """Raised when a ROM cannot be placed into memory."""

    pass


class ROMTooLarge(LoadError):
    def __init__(self, size: int, capacity: int) -> None:
        self.size = size
        self.capacity = capacity
        super().__init__(f"ROM is {size} bytes, only {capacity} bytes fit")
