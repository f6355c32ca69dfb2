#!/usr/bin/env python3
"""
LC-3 Virtual Machine / CLI
==========================
Runs an LC-3 object image with the host terminal as the console.

  stdout  <- TRAP OUT/PUTS/PUTSP/HALT and the DDR display register
  stdin   -> TRAP GETC/IN and the KBSR/KBDR keyboard registers

When stdin is a terminal it is switched to cbreak mode (no echo, no line
buffering, Ctrl-C still works) for the duration of the run.

Usage:
  python cli.py [--max-steps N] [--regs] [--quiet-halt] [-v] [--trace] IMAGE

Exit status: 0 after HALT, 1 on an image/run-time error, 2 on bad
arguments, 130 on Ctrl-C.
"""

from __future__ import annotations
import argparse
import contextlib
import logging
import os
import sys
from typing import Optional

from machine import LC3Error, ImageError
from devices import Console
from lc3 import HALT_MESSAGE
from system import LC3System

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAULT = 1
EXIT_INTERRUPTED = 130


# ---------------------------------------------------------------------------
#  Terminal console
# ---------------------------------------------------------------------------

class TerminalConsole(Console):
    """Console on the host's stdin/stdout (raw bytes, no translation)."""

    def __init__(self, stdin=None, stdout=None):
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout

    def read_char(self) -> int:
        self.flush()
        ch = os.read(self.stdin.fileno(), 1)
        if not ch:
            raise EOFError("end of input")
        return ch[0]

    def write_char(self, value: int):
        self.stdout.buffer.write(bytes([value & 0xFF]))

    def has_input(self) -> bool:
        import select
        return bool(select.select([self.stdin], [], [], 0)[0])

    def flush(self):
        self.stdout.flush()


@contextlib.contextmanager
def cbreak_terminal(stream):
    """Put *stream* in cbreak mode if it is a TTY; restore on exit."""
    if not stream.isatty():
        yield
        return
    import termios, tty

    fd = stream.fileno()
    old_settings = termios.tcgetattr(fd)
    try:
        tty.setcbreak(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lc3",
        description="LC-3 Virtual Machine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py 2048.obj\n"
               "  python cli.py --regs --max-steps 100000 hello.obj\n"
               "  python cli.py --trace hello.obj 2> trace.log\n"
    )
    parser.add_argument("image",
                        help="Object image: big-endian words, first word is the origin")
    parser.add_argument("--max-steps", type=int, default=None, metavar="N",
                        help="Stop after N instructions (default: no limit)")
    parser.add_argument("--regs", action="store_true",
                        help="Print the register file to stderr when the run ends")
    parser.add_argument("--quiet-halt", action="store_true",
                        help="Do not print the HALT notice")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Log loader and halt diagnostics to stderr")
    parser.add_argument("--trace", action="store_true",
                        help="Log every executed instruction to stderr (slow)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.WARNING
    if args.verbose:
        level = logging.INFO
    if args.trace:
        level = logging.DEBUG
    logging.basicConfig(level=level, stream=sys.stderr,
                        format="[%(name)s] %(levelname)s: %(message)s")

    console = TerminalConsole()
    sys_emu = LC3System(console=console,
                        halt_message="" if args.quiet_halt else HALT_MESSAGE)
    sys_emu.cpu.trace = args.trace

    try:
        origin = sys_emu.load_image_file(args.image)
    except OSError as e:
        print(f"Error: cannot read image '{args.image}': {e.strerror}",
              file=sys.stderr)
        return EXIT_FAULT
    except ImageError as e:
        print(f"Error: bad image '{args.image}': {e}", file=sys.stderr)
        return EXIT_FAULT
    logger.info("Running '%s' from x%04X", args.image, origin)

    status = EXIT_OK
    try:
        with cbreak_terminal(console.stdin):
            sys_emu.run(args.max_steps)
    except LC3Error as e:
        console.flush()
        print(f"\nFatal: {e}", file=sys.stderr)
        status = EXIT_FAULT
    except EOFError:
        console.flush()
        print(f"\nFatal: input ended while the program was reading "
              f"(PC=x{sys_emu.state.pc:04X})", file=sys.stderr)
        status = EXIT_FAULT
    except KeyboardInterrupt:
        console.flush()
        print("\nInterrupted.", file=sys.stderr)
        status = EXIT_INTERRUPTED
    else:
        console.flush()
        if not sys_emu.halted:
            print(f"\nStopped after {args.max_steps} steps without HALT.",
                  file=sys.stderr)
            status = EXIT_FAULT

    if args.regs:
        print(sys_emu.dump_state(), file=sys.stderr)
    return status


if __name__ == "__main__":
    sys.exit(main())
