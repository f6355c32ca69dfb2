"""
LC-3 Machine State
==================
Register file, condition flags and the 64K-word memory of an LC-3
machine, plus the word-level helpers and the error taxonomy shared by
the rest of the emulator.

No instruction semantics live here; the execution engine in lc3.py
reads and writes this state.  Memory-mapped I/O is routed through an
optional device bus (devices.py) attached as ``state.bus``.
"""

from __future__ import annotations
from enum import IntEnum
from typing import Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from devices import DeviceBus

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEMORY_SIZE = 1 << 16
MASK16 = 0xFFFF
SIGN16 = 0x8000

PC_START = 0x3000   # conventional user-program origin

# Register file indices
R_R0, R_R1, R_R2, R_R3 = 0, 1, 2, 3
R_R4, R_R5, R_R6, R_R7 = 4, 5, 6, 7
R_PC    = 8
R_COND  = 9
R_COUNT = 10

REG_NAMES = ["R0", "R1", "R2", "R3", "R4", "R5", "R6", "R7", "PC", "COND"]


class Flag(IntEnum):
    """Condition flags, stored one-hot in COND."""
    POS = 1 << 0
    ZRO = 1 << 1
    NEG = 1 << 2


FL_POS = Flag.POS
FL_ZRO = Flag.ZRO
FL_NEG = Flag.NEG

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u16(v: int) -> int:
    """Mask to unsigned 16 bits."""
    return v & MASK16

def s16(v: int) -> int:
    """Interpret a 16-bit value as signed."""
    v = u16(v)
    return v - (1 << 16) if v & SIGN16 else v

def sign_extend(val: int, bits: int) -> int:
    """Sign-extend the low *bits* of val to a 16-bit word."""
    val &= (1 << bits) - 1
    if (val >> (bits - 1)) & 1:
        val |= (MASK16 << bits)
    return u16(val)

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class LC3Error(Exception):
    """Base for everything the emulator raises on purpose."""
    pass

class ImageError(LC3Error):
    pass

class ImageFormatError(ImageError):
    pass

class ImageTooLargeError(ImageError):
    def __init__(self, origin: int, length: int):
        self.origin = origin
        self.length = length
        super().__init__(
            f"Image of {length} words at origin x{origin:04X} overruns "
            f"memory (ends at x{origin + length:05X}, limit x{MEMORY_SIZE:05X})")

class IllegalOpcodeError(LC3Error):
    def __init__(self, opcode: int, address: int):
        self.opcode = opcode
        self.address = address
        super().__init__(
            f"Illegal opcode {opcode:#06b} at x{address:04X}")

class UnknownTrapError(LC3Error):
    def __init__(self, vector: int, address: int):
        self.vector = vector
        self.address = address
        super().__init__(
            f"Unknown trap vector x{vector:02X} at x{address:04X}")

class HaltError(LC3Error):
    pass

# ---------------------------------------------------------------------------
#  Machine state
# ---------------------------------------------------------------------------

class MachineState:
    """Registers, COND and 64K words of memory for one LC-3 machine."""

    def __init__(self, origin: int = PC_START):
        self.mem: list[int] = [0] * MEMORY_SIZE
        self.reg: list[int] = [0] * R_COUNT
        self.bus: Optional[DeviceBus] = None
        self.reset(origin)

    # -- Property shortcuts --

    @property
    def pc(self) -> int:
        return self.reg[R_PC]

    @pc.setter
    def pc(self, value: int):
        self.reg[R_PC] = u16(value)

    @property
    def cond(self) -> Flag:
        return Flag(self.reg[R_COND])

    # -- Lifecycle --

    def reset(self, origin: int = PC_START):
        """Zero registers and memory; PC = origin, COND = ZERO."""
        self.mem[:] = [0] * MEMORY_SIZE
        self.reg[:] = [0] * R_COUNT
        self.reg[R_PC] = u16(origin)
        self.reg[R_COND] = FL_ZRO

    def load(self, words: Sequence[int], origin: int):
        """Copy *words* into memory starting at *origin*."""
        if origin < 0 or origin + len(words) > MEMORY_SIZE:
            raise ImageTooLargeError(origin, len(words))
        self.mem[origin:origin + len(words)] = [u16(w) for w in words]

    # -- Memory access --

    def mem_read(self, address: int) -> int:
        address = u16(address)
        if self.bus is not None:
            dev = self.bus.find_device(address)
            if dev is not None:
                return u16(dev.read16(address - dev.base))
        return self.mem[address]

    def mem_write(self, address: int, value: int):
        address = u16(address)
        value = u16(value)
        if self.bus is not None:
            dev = self.bus.find_device(address)
            if dev is not None:
                dev.write16(address - dev.base, value)
                return
        self.mem[address] = value

    # -- Flags --

    def update_flags(self, r: int):
        """Set COND from the signed value of register *r*."""
        v = self.reg[r]
        if v == 0:
            self.reg[R_COND] = FL_ZRO
        elif v & SIGN16:
            self.reg[R_COND] = FL_NEG
        else:
            self.reg[R_COND] = FL_POS

    # -- Debug / introspection --

    def snapshot(self) -> tuple[tuple[int, ...], tuple[int, ...]]:
        """Immutable copy of (registers, memory)."""
        return tuple(self.reg), tuple(self.mem)

    def dump_regs(self) -> str:
        lines = []
        for i in range(0, 8, 4):
            lines.append("  " + "  ".join(
                f"{REG_NAMES[r]} = x{self.reg[r]:04X}" for r in range(i, i + 4)))
        lines.append(f"  {REG_NAMES[R_PC]} = x{self.pc:04X}  "
                     f"{REG_NAMES[R_COND]} = {self.cond.name}")
        return "\n".join(lines)
