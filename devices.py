"""
LC-3 Peripheral / Device Layer
==============================
Memory-mapped I/O registers and the console collaborator.

Device register map (word addresses):

  xFE00  KBSR  keyboard status   (R)  bit 15: a key is ready
  xFE02  KBDR  keyboard data     (R)  latched key code, clears ready
  xFE04  DSR   display status    (R)  bit 15: display ready (always)
  xFE06  DDR   display data      (W)  low byte written to the console
  xFFFE  MCR   machine control   (RW) bit 15: clock enable

All registers are 16-bit; MachineState.mem_read/mem_write route accesses
to them through the DeviceBus.  Addresses in the device page that no
device claims behave as plain memory.

The console is whatever the host plugs in: BufferConsole for tests and
embedding, TerminalConsole (cli.py) for an interactive run.
"""

from __future__ import annotations
from collections import deque
from typing import Callable, Optional

# ---------------------------------------------------------------------------
#  Register addresses
# ---------------------------------------------------------------------------

MMIO_BASE = 0xFE00

MR_KBSR = 0xFE00
MR_KBDR = 0xFE02
MR_DSR  = 0xFE04
MR_DDR  = 0xFE06
MR_MCR  = 0xFFFE

READY_BIT = 1 << 15


# ---------------------------------------------------------------------------
#  Console collaborator
# ---------------------------------------------------------------------------

class Console:
    """Character I/O seen by the TRAP routines and the device registers."""

    def read_char(self) -> int:
        """Block until one character is available and return its code."""
        raise NotImplementedError

    def write_char(self, value: int):
        raise NotImplementedError

    def has_input(self) -> bool:
        """Non-blocking: is a character waiting?"""
        return False

    def flush(self):
        pass


class BufferConsole(Console):
    """In-memory console: queued input, captured output."""

    def __init__(self, input_data: bytes | str = b""):
        self.rx_buffer: deque[int] = deque()   # bytes host -> machine
        self.tx_buffer: list[int] = []         # bytes machine -> host
        self.on_tx: Optional[Callable[[int], None]] = None
        self.inject_input(input_data)

    def inject_input(self, data: bytes | str):
        """Push bytes into the input queue."""
        if isinstance(data, str):
            data = data.encode("latin-1", errors="replace")
        for b in data:
            self.rx_buffer.append(b & 0xFF)

    def read_char(self) -> int:
        if not self.rx_buffer:
            raise EOFError("console input exhausted")
        return self.rx_buffer.popleft()

    def write_char(self, value: int):
        value &= 0xFF
        self.tx_buffer.append(value)
        if self.on_tx:
            self.on_tx(value)

    def has_input(self) -> bool:
        return bool(self.rx_buffer)

    def output(self) -> str:
        """Everything written so far, as text."""
        return bytes(self.tx_buffer).decode("latin-1")

    def drain_output(self) -> str:
        """Return pending output and clear it."""
        out = self.output()
        self.tx_buffer.clear()
        return out


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Abstract memory-mapped peripheral."""

    def __init__(self, name: str, base: int, size: int):
        self.name = name
        self.base = base   # first word address
        self.size = size   # number of words in the register window

    def claims(self, offset: int) -> bool:
        """True if the word at *offset* in the window is a register."""
        return 0 <= offset < self.size

    def read16(self, offset: int) -> int:
        return 0

    def write16(self, offset: int, value: int):
        pass

    def reset(self):
        pass


# ---------------------------------------------------------------------------
#  Keyboard (KBSR / KBDR)
# ---------------------------------------------------------------------------

class Keyboard(Device):
    """Polled keyboard.  Reading KBSR latches a waiting key into KBDR."""

    def __init__(self, console: Console):
        super().__init__("KBD", MR_KBSR, 3)
        self.console = console
        self.ready = False
        self.data = 0

    def reset(self):
        self.ready = False
        self.data = 0

    def claims(self, offset: int) -> bool:
        return offset in (0, 2)

    def read16(self, offset: int) -> int:
        if offset == 0:                     # KBSR
            if not self.ready and self.console.has_input():
                self.data = self.console.read_char() & 0xFF
                self.ready = True
            return READY_BIT if self.ready else 0
        if offset == 2:                     # KBDR
            self.ready = False
            return self.data
        return 0


# ---------------------------------------------------------------------------
#  Display (DSR / DDR)
# ---------------------------------------------------------------------------

class Display(Device):
    """Always-ready character display."""

    def __init__(self, console: Console):
        super().__init__("DSP", MR_DSR, 3)
        self.console = console

    def claims(self, offset: int) -> bool:
        return offset in (0, 2)

    def read16(self, offset: int) -> int:
        if offset == 0:                     # DSR
            return READY_BIT
        return 0

    def write16(self, offset: int, value: int):
        if offset == 2:                     # DDR
            self.console.write_char(value & 0xFF)
            self.console.flush()


# ---------------------------------------------------------------------------
#  Machine control register (MCR)
# ---------------------------------------------------------------------------

class MachineControl(Device):
    """Clearing bit 15 of MCR stops the clock, i.e. halts the machine."""

    def __init__(self):
        super().__init__("MCR", MR_MCR, 1)
        self.value = READY_BIT
        self.on_halt: Optional[Callable[[], None]] = None

    def reset(self):
        self.value = READY_BIT

    def read16(self, offset: int) -> int:
        return self.value

    def write16(self, offset: int, value: int):
        self.value = value
        if not value & READY_BIT and self.on_halt:
            self.on_halt()


# ---------------------------------------------------------------------------
#  Device bus
# ---------------------------------------------------------------------------

class DeviceBus:
    """Routes memory-mapped accesses to registered devices."""

    def __init__(self):
        self.devices: list[Device] = []

    def register(self, device: Device):
        self.devices.append(device)

    def find_device(self, address: int) -> Optional[Device]:
        if address < MMIO_BASE:
            return None
        for dev in self.devices:
            if dev.claims(address - dev.base):
                return dev
        return None

    def reset(self):
        for dev in self.devices:
            dev.reset()
