#!/usr/bin/env python3
"""
Integration tests for the LC-3 system emulator.

Tests the full stack: image loader + machine state + device bus + CPU +
console, using hand-encoded object images.
"""
import os
import tempfile
import unittest

from machine import (
    ImageFormatError, ImageTooLargeError, IllegalOpcodeError,
    FL_POS, R_R0, R_R1,
)
from devices import BufferConsole, MR_KBSR, MR_KBDR, MR_DSR, MR_DDR, MR_MCR
from lc3 import HALT_MESSAGE
from system import LC3System, parse_image, build_image


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def add_r(dr, sr1, sr2):  return 0x1000 | dr << 9 | sr1 << 6 | sr2
def add_i(dr, sr1, imm):  return 0x1000 | dr << 9 | sr1 << 6 | 0x20 | (imm & 0x1F)
def and_i(dr, sr1, imm):  return 0x5000 | dr << 9 | sr1 << 6 | 0x20 | (imm & 0x1F)
def br(nzp, off):         return nzp << 9 | (off & 0x1FF)
def ld(dr, off):          return 0x2000 | dr << 9 | (off & 0x1FF)
def ldi(dr, off):         return 0xA000 | dr << 9 | (off & 0x1FF)
def lea(dr, off):         return 0xE000 | dr << 9 | (off & 0x1FF)
def st(sr, off):          return 0x3000 | sr << 9 | (off & 0x1FF)
def sti(sr, off):         return 0xB000 | sr << 9 | (off & 0x1FF)
def trap(vec):            return 0xF000 | vec

HALT = trap(0x25)

HELLO = [lea(0, 2), trap(0x22), HALT, ord("H"), ord("I"), 0]


def make_system(inp: bytes = b"") -> LC3System:
    return LC3System(console=BufferConsole(inp))


def run_image(data: bytes, inp: bytes = b"", max_steps: int = 100_000):
    sys_emu = make_system(inp)
    sys_emu.load_image(data)
    sys_emu.run(max_steps)
    return sys_emu


# ---------------------------------------------------------------------------
#  Image parsing
# ---------------------------------------------------------------------------

class TestImageFormat(unittest.TestCase):
    def test_big_endian_words(self):
        origin, words = parse_image(bytes([0x30, 0x00, 0x12, 0x34, 0xAB, 0xCD]))
        self.assertEqual(origin, 0x3000)
        self.assertEqual(words, [0x1234, 0xABCD])

    def test_origin_only(self):
        self.assertEqual(parse_image(b"\x40\x00"), (0x4000, []))

    def test_empty_image(self):
        with self.assertRaises(ImageFormatError):
            parse_image(b"")

    def test_odd_length(self):
        with self.assertRaises(ImageFormatError) as cm:
            parse_image(b"\x30\x00\x12")
        self.assertIn("odd", str(cm.exception))

    def test_too_large(self):
        with self.assertRaises(ImageTooLargeError):
            parse_image(build_image(0xFFFF, [1, 2]))

    def test_exactly_fills_memory(self):
        origin, words = parse_image(build_image(0xFFF0, [0] * 16))
        self.assertEqual(origin, 0xFFF0)
        self.assertEqual(len(words), 16)

    def test_build_image_layout(self):
        self.assertEqual(build_image(0x3000, [0xF025]), b"\x30\x00\xF0\x25")


# ---------------------------------------------------------------------------
#  Loading
# ---------------------------------------------------------------------------

class TestLoading(unittest.TestCase):
    def test_load_sets_pc_to_origin(self):
        sys_emu = make_system()
        origin = sys_emu.load_image(build_image(0x4000, [HALT]))
        self.assertEqual(origin, 0x4000)
        self.assertEqual(sys_emu.state.pc, 0x4000)
        self.assertEqual(sys_emu.state.mem[0x4000], HALT)

    def test_oversize_image_rejected_before_running(self):
        sys_emu = make_system()
        sys_emu.load_image(build_image(0x3000, [add_i(0, 0, 1), HALT]))
        with self.assertRaises(ImageTooLargeError):
            sys_emu.load_image(build_image(0xFFFE, [add_i(0, 0, 1)] * 3))
        # Previous program is still intact and nothing ran.
        self.assertEqual(sys_emu.state.pc, 0x3000)
        self.assertEqual(sys_emu.cpu.instr_count, 0)
        self.assertEqual(sys_emu.state.mem[0xFFFE], 0)

    def test_load_image_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "hello.obj")
            with open(path, "wb") as f:
                f.write(build_image(0x3000, HELLO))
            sys_emu = make_system()
            sys_emu.load_image_file(path)
            sys_emu.run()
        self.assertEqual(sys_emu.get_output(), "HI" + HALT_MESSAGE)

    def test_load_program_resets_previous_state(self):
        sys_emu = make_system()
        sys_emu.load_program([add_i(0, 0, 9), HALT])
        sys_emu.run()
        sys_emu.load_program([HALT], origin=0x5000)
        self.assertEqual(sys_emu.state.reg[R_R0], 0)
        self.assertEqual(sys_emu.state.mem[0x3000], 0)
        self.assertFalse(sys_emu.halted)


# ---------------------------------------------------------------------------
#  End-to-end programs
# ---------------------------------------------------------------------------

class TestPrograms(unittest.TestCase):
    def test_hello(self):
        sys_emu = run_image(build_image(0x3000, HELLO))
        self.assertTrue(sys_emu.halted)
        self.assertEqual(sys_emu.get_output(), "HI" + HALT_MESSAGE)

    def test_add_five_minus_three(self):
        sys_emu = run_image(build_image(0x3000, [
            add_i(0, 0, 5), add_i(0, 0, -3), HALT]))
        self.assertEqual(sys_emu.state.reg[R_R0], 2)
        self.assertEqual(sys_emu.state.cond, FL_POS)

    def test_echo_until_newline(self):
        # GETC / OUT loop until '\n' (R1 = -10 compares against it)
        prog = [
            and_i(1, 1, 0),         # x3000
            add_i(1, 1, -10),       # x3001 R1 = -'\n'
            trap(0x20),             # x3002 GETC
            trap(0x21),             # x3003 OUT
            add_r(2, 1, 0),         # x3004 R2 = R1 + R0
            br(0b101, -4),          # x3005 BRnp x3002
            HALT,                   # x3006
        ]
        sys_emu = run_image(build_image(0x3000, prog), inp=b"abc\nzzz")
        self.assertEqual(sys_emu.get_output(), "abc\n" + HALT_MESSAGE)
        self.assertEqual(list(sys_emu.console.rx_buffer), list(b"zzz"))

    def test_counted_store_loop(self):
        # Fill x4000..x4004 with 5, 4, 3, 2, 1 through STR
        prog = [
            ld(2, 7),               # x3000 R2 = [x3008]
            and_i(1, 1, 0),         # x3001
            add_i(1, 1, 5),         # x3002 R1 = 5
            0x7280,                 # x3003 STR R1, R2, #0
            add_i(2, 2, 1),         # x3004
            add_i(1, 1, -1),        # x3005
            br(0b001, -4),          # x3006 BRp x3003
            HALT,                   # x3007
            0x4000,                 # x3008
        ]
        sys_emu = run_image(build_image(0x3000, prog))
        self.assertEqual(sys_emu.state.mem[0x4000:0x4005], [5, 4, 3, 2, 1])
        self.assertEqual(sys_emu.state.mem[0x4005], 0)

    def test_illegal_opcode_stops_run(self):
        sys_emu = make_system()
        sys_emu.load_program([add_i(0, 0, 1), 0x8000, add_i(0, 0, 1), HALT])
        with self.assertRaises(IllegalOpcodeError):
            sys_emu.run()
        self.assertTrue(sys_emu.halted)
        self.assertEqual(sys_emu.state.reg[R_R0], 1)
        self.assertIn("Fault: Illegal opcode", sys_emu.dump_state())

    def test_deterministic_across_reloads(self):
        prog = [
            add_i(1, 1, 7),         # x3000
            add_i(0, 0, 3),         # x3001
            add_i(1, 1, -1),        # x3002
            br(0b001, -3),          # x3003 BRp x3001
            st(0, 6),               # x3004 [x300B] = 21
            lea(0, 2),              # x3005 R0 = x3008
            trap(0x22),             # x3006 PUTS "ok"
            HALT,                   # x3007
            ord("o"), ord("k"), 0,  # x3008
            0,                      # x300B
        ]
        image = build_image(0x3000, prog)

        sys_emu = make_system()
        sys_emu.load_image(image)
        sys_emu.run(10_000)
        first = sys_emu.state.snapshot()
        first_out = sys_emu.get_output()

        sys_emu.load_image(image)
        sys_emu.run(10_000)
        second = sys_emu.state.snapshot()
        second_out = sys_emu.get_output()

        self.assertEqual(first, second)
        self.assertEqual(first_out, second_out)
        self.assertEqual(first_out, "ok" + HALT_MESSAGE)
        self.assertEqual(sys_emu.state.mem[0x300B], 21)

    def test_independent_machines(self):
        a = make_system()
        b = make_system()
        a.load_program([add_i(0, 0, 4), st(0, 1), HALT, 0])
        b.load_program([HALT])
        a.run()
        b.run()
        self.assertEqual(a.state.mem[0x3003], 4)
        self.assertEqual(b.state.mem[0x3003], 0)
        self.assertEqual(b.state.reg[R_R0], 0)


# ---------------------------------------------------------------------------
#  Memory-mapped devices
# ---------------------------------------------------------------------------

class TestSystemMMIO(unittest.TestCase):
    KBD_POLL = [
        ldi(0, 3),                  # x3000 R0 = [KBSR]
        br(0b011, -2),              # x3001 BRzp x3000
        ldi(0, 2),                  # x3002 R0 = [KBDR]
        HALT,                       # x3003
        MR_KBSR,                    # x3004
        MR_KBDR,                    # x3005
    ]

    def test_keyboard_polling(self):
        sys_emu = make_system(b"k")
        sys_emu.load_program(self.KBD_POLL)
        sys_emu.run(1000)
        self.assertTrue(sys_emu.halted)
        self.assertEqual(sys_emu.state.reg[R_R0], ord("k"))

    def test_keyboard_polling_without_input_spins(self):
        sys_emu = make_system()
        sys_emu.load_program(self.KBD_POLL)
        self.assertEqual(sys_emu.run(50), 50)
        self.assertFalse(sys_emu.halted)

    def test_display_register(self):
        sys_emu = make_system()
        sys_emu.load_program([
            ld(0, 3),               # x3000 R0 = 'Z'
            sti(0, 3),              # x3001 [DDR] = R0
            HALT,                   # x3002
            0,                      # x3003
            ord("Z"),               # x3004
            MR_DDR,                 # x3005
        ])
        sys_emu.run()
        self.assertEqual(sys_emu.get_output(), "Z" + HALT_MESSAGE)
        self.assertEqual(sys_emu.state.mem[MR_DDR], 0)

    def test_display_always_ready(self):
        sys_emu = make_system()
        self.assertEqual(sys_emu.state.mem_read(MR_DSR), 0x8000)

    def test_mcr_clear_halts(self):
        sys_emu = make_system()
        sys_emu.load_program([
            and_i(0, 0, 0),         # x3000
            sti(0, 1),              # x3001 [MCR] = 0
            add_i(1, 1, 1),         # x3002 never runs
            MR_MCR,                 # x3003
        ])
        sys_emu.run(100)
        self.assertTrue(sys_emu.halted)
        self.assertEqual(sys_emu.state.reg[R_R1], 0)
        self.assertEqual(sys_emu.cpu.instr_count, 2)
        self.assertEqual(sys_emu.get_output(), "")

    def test_mcr_reads_running(self):
        sys_emu = make_system()
        self.assertEqual(sys_emu.state.mem_read(MR_MCR), 0x8000)

    def test_unclaimed_device_page_is_memory(self):
        sys_emu = make_system()
        sys_emu.state.mem_write(0xFE10, 0x1234)
        self.assertEqual(sys_emu.state.mem_read(0xFE10), 0x1234)

    def test_words_between_device_registers_are_memory(self):
        sys_emu = make_system()
        for addr in (0xFE01, 0xFE03, 0xFE05, 0xFE07):
            sys_emu.state.mem_write(addr, addr ^ 0x5A5A)
            self.assertEqual(sys_emu.state.mem_read(addr), addr ^ 0x5A5A)

    def test_reset_clears_device_state(self):
        sys_emu = make_system(b"q")
        sys_emu.state.mem_read(MR_KBSR)
        self.assertTrue(sys_emu.keyboard.ready)
        sys_emu.state.mem_write(MR_MCR, 0)
        sys_emu.reset()
        self.assertFalse(sys_emu.keyboard.ready)
        self.assertEqual(sys_emu.mcr.value, 0x8000)
        self.assertFalse(sys_emu.halted)

    def test_dump_state(self):
        sys_emu = make_system()
        text = sys_emu.dump_state()
        self.assertIn("=== Registers ===", text)
        self.assertIn("MCR: x8000", text)

    def test_dump_state_after_input_runs_out(self):
        sys_emu = make_system()
        sys_emu.load_program([trap(0x20), HALT])
        with self.assertRaises(EOFError):
            sys_emu.run()
        text = sys_emu.dump_state()
        self.assertIn("Halted: True", text)
        self.assertIn("Fault: console input exhausted", text)
        self.assertIn("PC = x3000", text)


if __name__ == "__main__":
    unittest.main()
