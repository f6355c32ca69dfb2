"""
LC-3 System Emulator
====================
Wires together:
  - the machine state (machine.py): registers, COND and 64K words of RAM
  - the device bus (devices.py): keyboard, display and MCR registers
  - the execution engine (lc3.py)
  - a Console collaborator for TRAP and device I/O

and owns the program-image loader.  One LC3System is one independent
machine; nothing is shared between instances.
"""

from __future__ import annotations
import logging
import struct
from typing import Optional, Sequence

from machine import (
    MachineState, ImageFormatError, ImageTooLargeError, MEMORY_SIZE, PC_START,
)
from devices import (
    Console, BufferConsole, DeviceBus, Keyboard, Display, MachineControl,
)
from lc3 import LC3, HALT_MESSAGE

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
#  Program images
# ---------------------------------------------------------------------------

def parse_image(data: bytes | bytearray) -> tuple[int, list[int]]:
    """Split an object image into (origin, words).

    The image is a run of big-endian 16-bit words; the first is the load
    origin and the rest are placed in memory starting there.
    """
    if len(data) < 2:
        raise ImageFormatError(
            f"Image is {len(data)} bytes; need at least an origin word")
    if len(data) % 2:
        raise ImageFormatError(
            f"Image length {len(data)} is odd; expected whole 16-bit words")
    count = len(data) // 2 - 1
    origin, = struct.unpack_from(">H", data, 0)
    words = list(struct.unpack_from(f">{count}H", data, 2))
    if origin + count > MEMORY_SIZE:
        raise ImageTooLargeError(origin, count)
    return origin, words


def build_image(origin: int, words: Sequence[int]) -> bytes:
    """Inverse of parse_image: origin word followed by the program words."""
    return struct.pack(f">{len(words) + 1}H", origin & 0xFFFF,
                       *(w & 0xFFFF for w in words))


# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class LC3System:
    """A complete LC-3 machine: state, devices, CPU and console."""

    def __init__(self, console: Optional[Console] = None,
                 halt_message: str = HALT_MESSAGE):
        self.console = console if console is not None else BufferConsole()

        self.state = MachineState()

        self.bus = DeviceBus()
        self.keyboard = Keyboard(self.console)
        self.display = Display(self.console)
        self.mcr = MachineControl()
        for dev in (self.keyboard, self.display, self.mcr):
            self.bus.register(dev)
        self.state.bus = self.bus

        self.cpu = LC3(self.state, self.console, halt_message=halt_message)
        self.mcr.on_halt = self.cpu.halt

        self.origin: int = PC_START

    # -----------------------------------------------------------------
    #  Reset / load
    # -----------------------------------------------------------------

    def reset(self, origin: Optional[int] = None):
        """Cold reset: clear RAM and registers, PC at *origin*."""
        if origin is not None:
            self.origin = origin
        self.state.reset(self.origin)
        self.bus.reset()
        self.cpu.reset()

    def load_program(self, words: Sequence[int], origin: int = PC_START):
        """Reset, then place *words* at *origin* with PC pointing there."""
        if origin + len(words) > MEMORY_SIZE:
            raise ImageTooLargeError(origin, len(words))
        self.reset(origin)
        self.state.load(words, origin)

    def load_image(self, data: bytes | bytearray) -> int:
        """Load an object image; returns the origin."""
        origin, words = parse_image(data)
        self.load_program(words, origin)
        logger.info("Loaded %d words at x%04X", len(words), origin)
        return origin

    def load_image_file(self, path: str) -> int:
        with open(path, "rb") as f:
            data = f.read()
        return self.load_image(data)

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    @property
    def halted(self) -> bool:
        return self.cpu.halted

    def step(self):
        self.cpu.step()

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until HALT or *max_steps*; returns instructions executed."""
        return self.cpu.run(max_steps)

    # -----------------------------------------------------------------
    #  Introspection
    # -----------------------------------------------------------------

    def get_output(self) -> str:
        """Drain captured console output (BufferConsole only)."""
        if isinstance(self.console, BufferConsole):
            return self.console.drain_output()
        return ""

    def dump_state(self) -> str:
        lines = ["=== Registers ===", self.state.dump_regs()]
        lines.append(f"  Instructions: {self.cpu.instr_count}  "
                     f"Halted: {self.cpu.halted}")
        if self.cpu.fault is not None:
            lines.append(f"  Fault: {self.cpu.fault}")
        lines.append("=== Devices ===")
        lines.append(f"  KBD: ready={'Y' if self.keyboard.ready else 'N'} "
                     f"data=x{self.keyboard.data:02X}")
        lines.append(f"  MCR: x{self.mcr.value:04X}")
        return "\n".join(lines)
