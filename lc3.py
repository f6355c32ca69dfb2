"""
LC-3 Execution Engine
=====================
Fetch/decode/execute loop for the LC-3 ISA.

Every instruction is a single 16-bit word.  The loop reads the word at
PC, bumps PC by one word, switches on the top nibble through a 16-entry
handler table, and repeats until HALT (or a write to MCR) stops the
clock.  All PC-relative addressing is based on the incremented PC.

TRAP vectors x20-x25 are executed natively against a Console object
instead of jumping into an OS image.
"""

from __future__ import annotations
import logging
from typing import Callable, Optional

from machine import (
    MachineState, HaltError, IllegalOpcodeError, UnknownTrapError,
    R_R0, R_R7, R_PC, R_COND, u16, sign_extend,
)
from devices import Console

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Opcodes
# ---------------------------------------------------------------------------

OP_BR   = 0b0000  # branch
OP_ADD  = 0b0001  # add
OP_LD   = 0b0010  # load
OP_ST   = 0b0011  # store
OP_JSR  = 0b0100  # jump register
OP_AND  = 0b0101  # bitwise and
OP_LDR  = 0b0110  # load register
OP_STR  = 0b0111  # store register
OP_RTI  = 0b1000  # return from interrupt (supervisor only)
OP_NOT  = 0b1001  # bitwise not
OP_LDI  = 0b1010  # load indirect
OP_STI  = 0b1011  # store indirect
OP_JMP  = 0b1100  # jump
OP_RES  = 0b1101  # reserved
OP_LEA  = 0b1110  # load effective address
OP_TRAP = 0b1111  # execute trap

OP_NAMES = {
    OP_BR: "BR", OP_ADD: "ADD", OP_LD: "LD", OP_ST: "ST",
    OP_JSR: "JSR", OP_AND: "AND", OP_LDR: "LDR", OP_STR: "STR",
    OP_RTI: "RTI", OP_NOT: "NOT", OP_LDI: "LDI", OP_STI: "STI",
    OP_JMP: "JMP", OP_RES: "RES", OP_LEA: "LEA", OP_TRAP: "TRAP",
}

# ---------------------------------------------------------------------------
#  Trap vectors
# ---------------------------------------------------------------------------

TRAP_GETC  = 0x20  # read a char, no echo
TRAP_OUT   = 0x21  # write a char
TRAP_PUTS  = 0x22  # write a word string
TRAP_IN    = 0x23  # prompt, read and echo a char
TRAP_PUTSP = 0x24  # write a byte string
TRAP_HALT  = 0x25  # halt the machine

HALT_MESSAGE = "\n--- halting the LC-3 ---\n"
IN_PROMPT = "Enter a character: "


class LC3:
    """LC-3 CPU: executes instructions against a MachineState."""

    def __init__(self, state: MachineState, console: Console,
                 halt_message: str = HALT_MESSAGE):
        self.state = state
        self.console = console
        self.halt_message = halt_message

        self.running: bool = True
        self.fault: Optional[Exception] = None
        self.instr_count: int = 0
        self.trace: bool = False

        self._ops: list[Callable[[int], None]] = [
            self._exec_br,   self._exec_add,  self._exec_ld,   self._exec_st,
            self._exec_jsr,  self._exec_and,  self._exec_ldr,  self._exec_str,
            self._exec_illegal, self._exec_not, self._exec_ldi, self._exec_sti,
            self._exec_jmp,  self._exec_illegal, self._exec_lea, self._exec_trap,
        ]
        self._traps: dict[int, Callable[[], None]] = {
            TRAP_GETC:  self._trap_getc,
            TRAP_OUT:   self._trap_out,
            TRAP_PUTS:  self._trap_puts,
            TRAP_IN:    self._trap_in,
            TRAP_PUTSP: self._trap_putsp,
            TRAP_HALT:  self._trap_halt,
        }

    @property
    def halted(self) -> bool:
        return not self.running

    def reset(self):
        self.running = True
        self.fault = None
        self.instr_count = 0

    def halt(self):
        """Stop the clock.  The current instruction still completes."""
        self.running = False

    # =====================================================================
    #  STEP
    # =====================================================================

    def step(self):
        """Execute one instruction."""
        if not self.running:
            raise HaltError("CPU is halted")

        reg = self.state.reg
        addr = reg[R_PC]
        saved_r7 = reg[R_R7]
        instr = self.state.mem_read(addr)
        reg[R_PC] = u16(addr + 1)

        if self.trace:
            logger.debug("x%04X: x%04X  %s", addr, instr, OP_NAMES[instr >> 12])

        try:
            self._ops[instr >> 12](instr)
        except EOFError as e:
            # Console input ran dry: the instruction is left unexecuted.
            reg[R_PC] = addr
            reg[R_R7] = saved_r7
            self.running = False
            self.fault = e
            raise
        except (IllegalOpcodeError, UnknownTrapError) as e:
            self.running = False
            self.fault = e
            raise
        self.instr_count += 1

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until halted or *max_steps* instructions.  Returns steps run."""
        steps = 0
        while self.running:
            if max_steps is not None and steps >= max_steps:
                break
            self.step()
            steps += 1
        return steps

    # =====================================================================
    #  Opcode handlers
    # =====================================================================

    def _exec_br(self, instr: int):
        reg = self.state.reg
        if (instr >> 9) & 0x7 & reg[R_COND]:
            reg[R_PC] = u16(reg[R_PC] + sign_extend(instr, 9))

    def _exec_add(self, instr: int):
        reg = self.state.reg
        dr = (instr >> 9) & 0x7
        sr1 = (instr >> 6) & 0x7
        if (instr >> 5) & 0x1:
            reg[dr] = u16(reg[sr1] + sign_extend(instr, 5))
        else:
            reg[dr] = u16(reg[sr1] + reg[instr & 0x7])
        self.state.update_flags(dr)

    def _exec_and(self, instr: int):
        reg = self.state.reg
        dr = (instr >> 9) & 0x7
        sr1 = (instr >> 6) & 0x7
        if (instr >> 5) & 0x1:
            reg[dr] = reg[sr1] & sign_extend(instr, 5)
        else:
            reg[dr] = reg[sr1] & reg[instr & 0x7]
        self.state.update_flags(dr)

    def _exec_not(self, instr: int):
        reg = self.state.reg
        dr = (instr >> 9) & 0x7
        reg[dr] = u16(~reg[(instr >> 6) & 0x7])
        self.state.update_flags(dr)

    def _exec_jmp(self, instr: int):
        # JMP R7 is RET
        reg = self.state.reg
        reg[R_PC] = reg[(instr >> 6) & 0x7]

    def _exec_jsr(self, instr: int):
        reg = self.state.reg
        ret = reg[R_PC]
        if (instr >> 11) & 0x1:                   # JSR
            target = u16(ret + sign_extend(instr, 11))
        else:                                     # JSRR
            target = reg[(instr >> 6) & 0x7]
        reg[R_R7] = ret
        reg[R_PC] = target

    def _exec_ld(self, instr: int):
        reg = self.state.reg
        dr = (instr >> 9) & 0x7
        reg[dr] = self.state.mem_read(reg[R_PC] + sign_extend(instr, 9))
        self.state.update_flags(dr)

    def _exec_ldi(self, instr: int):
        reg = self.state.reg
        dr = (instr >> 9) & 0x7
        ptr = self.state.mem_read(reg[R_PC] + sign_extend(instr, 9))
        reg[dr] = self.state.mem_read(ptr)
        self.state.update_flags(dr)

    def _exec_ldr(self, instr: int):
        reg = self.state.reg
        dr = (instr >> 9) & 0x7
        base = reg[(instr >> 6) & 0x7]
        reg[dr] = self.state.mem_read(base + sign_extend(instr, 6))
        self.state.update_flags(dr)

    def _exec_lea(self, instr: int):
        reg = self.state.reg
        dr = (instr >> 9) & 0x7
        reg[dr] = u16(reg[R_PC] + sign_extend(instr, 9))
        self.state.update_flags(dr)

    def _exec_st(self, instr: int):
        reg = self.state.reg
        sr = (instr >> 9) & 0x7
        self.state.mem_write(reg[R_PC] + sign_extend(instr, 9), reg[sr])

    def _exec_sti(self, instr: int):
        reg = self.state.reg
        sr = (instr >> 9) & 0x7
        ptr = self.state.mem_read(reg[R_PC] + sign_extend(instr, 9))
        self.state.mem_write(ptr, reg[sr])

    def _exec_str(self, instr: int):
        reg = self.state.reg
        sr = (instr >> 9) & 0x7
        base = reg[(instr >> 6) & 0x7]
        self.state.mem_write(base + sign_extend(instr, 6), reg[sr])

    def _exec_illegal(self, instr: int):
        addr = u16(self.state.reg[R_PC] - 1)
        raise IllegalOpcodeError(instr >> 12, addr)

    # =====================================================================
    #  TRAP
    # =====================================================================

    def _exec_trap(self, instr: int):
        reg = self.state.reg
        reg[R_R7] = reg[R_PC]
        vector = instr & 0xFF
        handler = self._traps.get(vector)
        if handler is None:
            raise UnknownTrapError(vector, u16(reg[R_PC] - 1))
        handler()

    def _write_text(self, text: str):
        for ch in text:
            self.console.write_char(ord(ch) & 0xFF)

    def _trap_getc(self):
        self.state.reg[R_R0] = self.console.read_char() & 0xFF
        self.state.update_flags(R_R0)

    def _trap_out(self):
        self.console.write_char(self.state.reg[R_R0] & 0xFF)
        self.console.flush()

    def _trap_puts(self):
        addr = self.state.reg[R_R0]
        while True:
            word = self.state.mem_read(addr)
            if word == 0:
                break
            self.console.write_char(word & 0xFF)
            addr = u16(addr + 1)
        self.console.flush()

    def _trap_in(self):
        self._write_text(IN_PROMPT)
        self.console.flush()
        ch = self.console.read_char() & 0xFF
        self.console.write_char(ch)
        self.console.flush()
        self.state.reg[R_R0] = ch
        self.state.update_flags(R_R0)

    def _trap_putsp(self):
        addr = self.state.reg[R_R0]
        while True:
            word = self.state.mem_read(addr)
            lo = word & 0xFF
            if lo == 0:
                break
            self.console.write_char(lo)
            hi = word >> 8
            if hi == 0:
                break
            self.console.write_char(hi)
            addr = u16(addr + 1)
        self.console.flush()

    def _trap_halt(self):
        self._write_text(self.halt_message)
        self.console.flush()
        logger.info("HALT after %d instructions", self.instr_count + 1)
        self.halt()
