#!/usr/bin/env python3
from __future__ import annotations

import enum
import math
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, List, Optional, Tuple

# ----------------------------
# Lexer
# ----------------------------

DIGITS = "0123456789"
WHITESPACE = " \t\r\n"

SINGLE_CHAR_OPS = {
    "+": "PLUS",
    "*": "ASTERISK",
    "/": "SLASH",
    "%": "MOD",
    "^": "POWER",
    "!": "FACTORIAL",
}

@dataclass(frozen=True)
class Tok:
    kind: str
    value: str
    pos: int

class Lexer:
    """Walks an expression once, left to right, one token per call."""

    def __init__(self, src: str):
        self.src = src
        self.i = 0

    def peek(self, offset: int = 0) -> str:
        j = self.i + offset
        if j >= len(self.src):
            return ""
        return self.src[j]

    def next_token(self) -> Tok:
        while self.peek() and self.peek() in WHITESPACE:
            self.i += 1

        start = self.i
        ch = self.peek()
        if ch == "":
            return Tok("EOF", "", start)

        if ch in SINGLE_CHAR_OPS:
            self.i += 1
            return Tok(SINGLE_CHAR_OPS[ch], ch, start)

        if ch == "-":
            # "-3" is a literal, "3 - 4" is an operator
            if self.peek(1) and self.peek(1) in DIGITS:
                self.i += 1
                return self.read_number(start)
            self.i += 1
            return Tok("MINUS", ch, start)

        if ch in DIGITS:
            return self.read_number(start)

        ident = self.read_identifier()
        kind = lookup_identifier(ident)
        if kind == "ERROR":
            return Tok("ERROR", f"Unknown token {ident}", start)
        return Tok(kind, ident, start)

    def read_digits(self) -> None:
        while self.peek() and self.peek() in DIGITS:
            self.i += 1

    def read_number(self, start: int) -> Tok:
        self.read_digits()
        # a fraction needs at least one digit after the period
        if self.peek() == "." and self.peek(1) and self.peek(1) in DIGITS:
            self.i += 1
            self.read_digits()
        return Tok("NUMBER", self.src[start:self.i], start)

    def read_identifier(self) -> str:
        start = self.i
        while self.peek() and self.peek() not in DIGITS and self.peek() not in WHITESPACE:
            self.i += 1
        return self.src[start:self.i]

def lex(src: str) -> List[Tok]:
    """Return every token up to and including EOF. ERROR tokens are kept."""
    lexer = Lexer(src)
    toks: List[Tok] = []
    while True:
        t = lexer.next_token()
        toks.append(t)
        if t.kind == "EOF":
            return toks


# ----------------------------
# Keyword table
# ----------------------------

KEYWORDS = MappingProxyType({
    "abs":  "ABS",
    "cos":  "COS",
    "dup":  "DUP",
    "e":    "E",
    "pi":   "PI",
    "sin":  "SIN",
    "sqrt": "SQRT",
    "swap": "SWAP",
    "tan":  "TAN",
})

# e and pi are replaced by these literals before the IR is built
NAMED_CONSTANTS = MappingProxyType({
    "E":  repr(math.e),
    "PI": repr(math.pi),
})

def lookup_identifier(ident: str) -> str:
    return KEYWORDS.get(ident, "ERROR")


# ----------------------------
# IR
# ----------------------------

class CompileError(Exception):
    pass

class Op(enum.Enum):
    PUSH = "push"
    PLUS = "plus"
    MINUS = "minus"
    MULTIPLY = "multiply"
    DIVIDE = "divide"
    MODULUS = "modulus"
    POWER = "power"
    FACTORIAL = "factorial"
    ABS = "abs"
    SIN = "sin"
    COS = "cos"
    TAN = "tan"
    SQRT = "sqrt"
    DUP = "dup"
    SWAP = "swap"

@dataclass(frozen=True)
class Instr:
    op: Op
    value: Optional[str] = None   # only set for Op.PUSH

TOKEN_OPS = MappingProxyType({
    "PLUS":      Op.PLUS,
    "MINUS":     Op.MINUS,
    "ASTERISK":  Op.MULTIPLY,
    "SLASH":     Op.DIVIDE,
    "MOD":       Op.MODULUS,
    "POWER":     Op.POWER,
    "FACTORIAL": Op.FACTORIAL,
    "ABS":       Op.ABS,
    "SIN":       Op.SIN,
    "COS":       Op.COS,
    "TAN":       Op.TAN,
    "SQRT":      Op.SQRT,
    "DUP":       Op.DUP,
    "SWAP":      Op.SWAP,
})

def tokenize(expression: str) -> List[Tok]:
    """Lex the whole expression and check the program has a usable shape."""
    toks: List[Tok] = []
    for t in lex(expression):
        if t.kind == "EOF":
            break
        if t.kind == "ERROR":
            raise CompileError(f"Error parsing input at {t.pos}: {t.value}")
        if t.kind in NAMED_CONSTANTS:
            t = Tok("NUMBER", NAMED_CONSTANTS[t.kind], t.pos)
        toks.append(t)

    if not toks:
        raise CompileError("The input expression was empty")
    if toks[0].kind != "NUMBER":
        raise CompileError(f"Expected the program to begin with a number, got {toks[0].value!r}")
    # a lone number is a complete program; anything longer must end on an operator
    if len(toks) > 1 and toks[-1].kind == "NUMBER":
        raise CompileError(f"Program ends with the number {toks[-1].value!r} at {toks[-1].pos}")
    return toks

def build_ir(toks: List[Tok]) -> Tuple[List[Instr], List[str]]:
    """Convert tokens to instructions, collecting each distinct literal once."""
    instrs: List[Instr] = []
    constants: Dict[str, None] = {}
    for t in toks:
        if t.kind == "NUMBER":
            constants[t.value] = None
            instrs.append(Instr(Op.PUSH, t.value))
        elif t.kind in TOKEN_OPS:
            instrs.append(Instr(TOKEN_OPS[t.kind]))
        else:
            raise CompileError(f"Unexpected token {t.kind}:{t.value!r} at {t.pos}")
    return instrs, list(constants)


# ----------------------------
# Codegen (x86-64 Linux assembly, Intel syntax)
# ----------------------------

class CodegenError(CompileError):
    pass

def constant_symbol(literal: str) -> str:
    """Map a numeric literal to the data-section symbol holding it.

    "3" -> const_3, "-3.5" -> const_neg_3_5. The sign is taken from the
    text, so "-0" and "0" get different symbols.
    """
    if literal.startswith("-"):
        name = "const_neg_" + literal[1:]
    else:
        name = "const_" + literal
    return name.replace(".", "_")

def asm_escape_string(s: str) -> str:
    s = s.replace("\\", "\\\\")
    s = s.replace('"', '\\"')
    s = s.replace("\n", "\\n")
    return s

# Scratch cells. scratch_a/scratch_b hold operands (as doubles),
# scratch_int holds integer results on their way back to a double.
SCRATCH_CELLS = [
    ("scratch_a",   ".double", "0.0"),
    ("scratch_b",   ".double", "0.0"),
    ("scratch_int", ".quad",   "0"),
    ("depth",       ".quad",   "0"),
]

MESSAGES = [
    ("result_fmt", "Result %g\n"),
    ("div_zero",   "Attempted division by zero.  Aborting\n"),
    ("overflow",   "Overflow - value out of range.  Aborting\n"),
    ("stack_err",  "Insufficient entries on the stack.  Aborting\n"),
    ("stack_full", "Too many entries remaining on the stack.  Aborting\n"),
]

# Error handlers in the footer: label -> message symbol.
ERROR_HANDLERS = [
    ("division_by_zero",  "div_zero"),
    ("register_overflow", "overflow"),
    ("stack_too_full",    "stack_full"),
    ("stack_error",       "stack_err"),
]

def mem(symbol: str) -> str:
    return f"qword ptr [rip + {symbol}]"

class Codegen:
    """Emits one assembly program for an instruction list.

    The evaluation stack is the machine stack; every value on it is the
    64-bit pattern of a double. [depth] counts those values at run time,
    and blocks only use caller-saved registers (rax, rcx, rdx, xmm0) so
    main never has to restore anything.
    """

    def __init__(self, instrs: List[Instr], constants: List[str],
                 debug: bool = False, source: str = ""):
        self.instrs = instrs
        self.constants = constants
        self.debug = debug
        self.source = source
        self.lines: List[str] = []
        self.handlers: Dict[Op, Callable[[int, Instr], None]] = {
            Op.PUSH:      self.gen_push,
            Op.PLUS:      self.gen_plus,
            Op.MINUS:     self.gen_minus,
            Op.MULTIPLY:  self.gen_multiply,
            Op.DIVIDE:    self.gen_divide,
            Op.MODULUS:   self.gen_modulus,
            Op.POWER:     self.gen_power,
            Op.FACTORIAL: self.gen_factorial,
            Op.ABS:       self.gen_abs,
            Op.SIN:       self.gen_sin,
            Op.COS:       self.gen_cos,
            Op.TAN:       self.gen_tan,
            Op.SQRT:      self.gen_sqrt,
            Op.DUP:       self.gen_dup,
            Op.SWAP:      self.gen_swap,
        }

    def emit(self, s: str) -> None:
        self.lines.append(s)

    @staticmethod
    def label(base: str, idx: int) -> str:
        return f"{base}_{idx}"

    # ---------- shared snippets ----------
    def require(self, n: int) -> None:
        self.emit(f"\tcmp\t{mem('depth')}, {n}")
        self.emit("\tjb\tstack_error")

    def pop_into(self, cell: str) -> None:
        self.emit("\tpop\trax")
        self.emit(f"\tmov\t{mem(cell)}, rax")

    def push_from(self, cell: str) -> None:
        self.emit(f"\tmov\trax, {mem(cell)}")
        self.emit("\tpush\trax")

    def pop_truncated(self) -> None:
        """Pop a double into rax as an integer, rounding toward zero."""
        self.emit("\tpop\trax")
        self.emit("\tmovq\txmm0, rax")
        self.emit("\tcvttsd2si\trax, xmm0")

    def push_integer(self) -> None:
        """Push the integer in rax back onto the stack as a double."""
        self.emit(f"\tmov\t{mem('scratch_int')}, rax")
        self.emit(f"\tfild\t{mem('scratch_int')}")
        self.emit(f"\tfstp\t{mem('scratch_a')}")
        self.push_from("scratch_a")

    def shrink_depth(self) -> None:
        # two popped, one pushed
        self.emit(f"\tdec\t{mem('depth')}")

    def binary_float(self, name: str, fop: str, check_zero: bool = False) -> None:
        self.emit(f"\t# [{name}]")
        self.require(2)
        self.pop_into("scratch_a")
        if check_zero:
            # +0.0 and -0.0 differ only in the sign bit
            self.emit("\tmov\trdx, rax")
            self.emit("\tshl\trdx, 1")
            self.emit("\tjz\tdivision_by_zero")
        self.pop_into("scratch_b")
        self.emit(f"\tfld\t{mem('scratch_b')}")
        self.emit(f"\t{fop}\t{mem('scratch_a')}")
        self.emit(f"\tfstp\t{mem('scratch_a')}")
        self.push_from("scratch_a")
        self.shrink_depth()

    def check_trig_range(self) -> None:
        # fsin/fcos leave st(0) untouched and set C2 when |x| >= 2^63
        self.emit("\tfnstsw\tax")
        self.emit("\ttest\tah, 4")
        self.emit("\tjnz\tregister_overflow")

    def unary_float(self, name: str, fops: List[str]) -> None:
        self.emit(f"\t# [{name}]")
        self.require(1)
        self.pop_into("scratch_a")
        self.emit(f"\tfld\t{mem('scratch_a')}")
        for fop in fops:
            self.emit(f"\t{fop}")
            if fop in ("fsin", "fcos"):
                self.check_trig_range()
        self.emit(f"\tfstp\t{mem('scratch_a')}")
        self.push_from("scratch_a")

    # ---------- instructions ----------
    def gen_push(self, idx: int, ins: Instr) -> None:
        if not ins.value:
            raise CodegenError(f"Push instruction {idx} has no value")
        self.emit(f"\t# [PUSH] {ins.value}")
        self.emit(f"\tmov\trax, {mem(constant_symbol(ins.value))}")
        self.emit("\tpush\trax")
        self.emit(f"\tinc\t{mem('depth')}")

    def gen_plus(self, idx: int, ins: Instr) -> None:
        self.binary_float("PLUS", "fadd")

    def gen_minus(self, idx: int, ins: Instr) -> None:
        self.binary_float("MINUS", "fsub")

    def gen_multiply(self, idx: int, ins: Instr) -> None:
        self.binary_float("MULTIPLY", "fmul")

    def gen_divide(self, idx: int, ins: Instr) -> None:
        self.binary_float("DIVIDE", "fdiv", check_zero=True)

    def gen_modulus(self, idx: int, ins: Instr) -> None:
        # rcx = divisor, rax = dividend, remainder lands in rdx
        self.emit("\t# [MODULUS]")
        self.require(2)
        self.pop_truncated()
        self.emit("\tmov\trcx, rax")
        self.pop_truncated()
        self.emit("\ttest\trcx, rcx")
        self.emit("\tjz\tdivision_by_zero")
        # x % -1 == x % 1 == 0, and idiv by -1 can trap on INT64_MIN
        self.emit("\tmov\trdx, 1")
        self.emit("\tcmp\trcx, -1")
        self.emit("\tcmove\trcx, rdx")
        self.emit("\tcqo")
        self.emit("\tidiv\trcx")
        self.emit("\tmov\trax, rdx")
        self.push_integer()
        self.shrink_depth()

    def gen_power(self, idx: int, ins: Instr) -> None:
        # rcx = exponent, rax = base/accumulator, rdx = base
        loop = self.label("power_loop", idx)
        big = self.label("power_big", idx)
        zero = self.label("power_zero", idx)
        done = self.label("power_done", idx)

        self.emit("\t# [POWER]")
        self.require(2)
        self.pop_truncated()
        self.emit("\tmov\trcx, rax")
        self.pop_truncated()

        # an exponent of zero (or less) gives zero
        self.emit("\tcmp\trcx, 1")
        self.emit(f"\tjl\t{zero}")

        # -1, 0 and 1 never overflow: don't loop for them
        self.emit("\tlea\trdx, [rax + 1]")
        self.emit("\tcmp\trdx, 2")
        self.emit(f"\tja\t{big}")
        self.emit("\ttest\trcx, 1")
        self.emit(f"\tjnz\t{done}")
        self.emit("\timul\trax, rax")
        self.emit(f"\tjmp\t{done}")

        self.emit(f"{big}:")
        self.emit("\tmov\trdx, rax")
        self.emit(f"{loop}:")
        self.emit("\tdec\trcx")
        self.emit(f"\tjz\t{done}")
        self.emit("\timul\trax, rdx")
        self.emit("\tjo\tregister_overflow")
        self.emit(f"\tjmp\t{loop}")

        self.emit(f"{zero}:")
        self.emit("\txor\teax, eax")
        self.emit(f"{done}:")
        self.push_integer()
        self.shrink_depth()

    def gen_factorial(self, idx: int, ins: Instr) -> None:
        # rcx counts down, rax accumulates
        loop = self.label("factorial_loop", idx)
        done = self.label("factorial_done", idx)

        self.emit("\t# [FACTORIAL]")
        self.require(1)
        self.pop_truncated()
        self.emit("\tmov\trcx, rax")
        self.emit("\txor\teax, eax")
        self.emit("\tcmp\trcx, 1")
        self.emit(f"\tjl\t{done}")
        self.emit("\tmov\teax, 1")
        self.emit(f"{loop}:")
        self.emit("\timul\trax, rcx")
        self.emit("\tjo\tregister_overflow")
        self.emit("\tdec\trcx")
        self.emit(f"\tjnz\t{loop}")
        self.emit(f"{done}:")
        self.push_integer()

    def gen_abs(self, idx: int, ins: Instr) -> None:
        self.unary_float("ABS", ["fabs"])

    def gen_sin(self, idx: int, ins: Instr) -> None:
        self.unary_float("SIN", ["fsin"])

    def gen_cos(self, idx: int, ins: Instr) -> None:
        self.unary_float("COS", ["fcos"])

    def gen_sqrt(self, idx: int, ins: Instr) -> None:
        self.unary_float("SQRT", ["fsqrt"])

    def gen_tan(self, idx: int, ins: Instr) -> None:
        # tan(x) = sin(x) / cos(x), cos goes through scratch_b
        self.emit("\t# [TAN]")
        self.require(1)
        self.pop_into("scratch_a")
        self.emit(f"\tfld\t{mem('scratch_a')}")
        self.emit("\tfcos")
        self.check_trig_range()
        self.emit(f"\tfstp\t{mem('scratch_b')}")
        self.emit(f"\tfld\t{mem('scratch_a')}")
        self.emit("\tfsin")
        self.emit(f"\tfdiv\t{mem('scratch_b')}")
        self.emit(f"\tfstp\t{mem('scratch_a')}")
        self.push_from("scratch_a")

    def gen_dup(self, idx: int, ins: Instr) -> None:
        self.emit("\t# [DUP]")
        self.require(1)
        self.emit("\tmov\trax, qword ptr [rsp]")
        self.emit("\tpush\trax")
        self.emit(f"\tinc\t{mem('depth')}")

    def gen_swap(self, idx: int, ins: Instr) -> None:
        self.emit("\t# [SWAP]")
        self.require(2)
        self.emit("\tpop\trax")
        self.emit("\tpop\trcx")
        self.emit("\tpush\trax")
        self.emit("\tpush\trcx")

    # ---------- program ----------
    def gen_header(self) -> None:
        self.emit("#")
        self.emit("# Generated by rpncc.")
        if self.source:
            self.emit(f"# Expression: {' '.join(self.source.split())}")
        self.emit("#")
        self.emit(".intel_syntax noprefix")
        self.emit(".global main")
        self.emit("")
        self.emit(".data")
        for name, directive, init in SCRATCH_CELLS:
            self.emit(f"{name}:\t{directive}\t{init}")
        for name, text in MESSAGES:
            self.emit(f'{name}:\t.asciz\t"{asm_escape_string(text)}"')
        for literal in self.constants:
            self.emit(f"{constant_symbol(literal)}:\t.double\t{literal}")

        self.emit("")
        self.emit(".text")
        self.emit("main:")
        self.emit("\tpush\trbp")
        self.emit(f"\tmov\t{mem('depth')}, 0")
        if self.debug:
            self.emit("\t# Debug-break")
            self.emit("\tint3")

    def gen_footer(self) -> None:
        self.emit("")
        self.emit("\t# [PRINT] exactly one value must be left")
        self.emit(f"\tcmp\t{mem('depth')}, 1")
        self.emit("\tja\tstack_too_full")
        self.emit("\tjb\tstack_error")
        self.emit("\tpop\trax")
        self.emit("\tmovq\txmm0, rax")
        self.emit("\tlea\trdi, [rip + result_fmt]")
        self.emit("\tmov\teax, 1")
        self.emit("\tcall\tprintf@PLT")
        self.emit("\tpop\trbp")
        self.emit("\txor\teax, eax")
        self.emit("\tret")

        for lab, msg in ERROR_HANDLERS:
            self.emit("")
            self.emit(f"{lab}:")
            self.emit(f"\tlea\trdi, [rip + {msg}]")
            self.emit("\tjmp\tprint_msg_and_exit")

        # Handlers may be entered with any number of values pushed,
        # so realign before calling into libc. exit() flushes stdout.
        self.emit("")
        self.emit("print_msg_and_exit:")
        self.emit("\tand\trsp, -16")
        self.emit("\txor\teax, eax")
        self.emit("\tcall\tprintf@PLT")
        self.emit("\tmov\tedi, 1")
        self.emit("\tcall\texit@PLT")
        self.emit("")
        self.emit('.section .note.GNU-stack,"",@progbits')

    def gen(self) -> str:
        self.lines = []
        self.gen_header()
        for idx, ins in enumerate(self.instrs):
            handler = self.handlers.get(ins.op)
            if handler is None:
                raise CodegenError(f"Unsupported instruction {ins.op!r} at {idx}")
            self.emit("")
            handler(idx, ins)
        self.gen_footer()
        return "\n".join(self.lines) + "\n"


# ----------------------------
# Compiler API
# ----------------------------

class Compiler:
    def __init__(self, expression: str):
        self.expression = expression
        self.debug = False

    def set_debug(self, val: bool) -> None:
        self.debug = val

    def compile(self) -> str:
        """Lex, validate, build and generate. Raises CompileError."""
        toks = tokenize(self.expression)
        instrs, constants = build_ir(toks)
        return Codegen(instrs, constants, self.debug, self.expression).gen()


# ----------------------------
# Driver
# ----------------------------

HELP = """\
Usage:
  python3 rpncc.py [-d] [-c] [-r] [-o output] [--] 'expression'

  Put -- before an expression that starts with a negative number.

  -d   insert a debug breakpoint after the prologue
  -c   assemble and link with gcc instead of printing the assembly
  -r   run the binary after building it (implies -c)
  -o   binary to write (default a.out)
"""

def run(cmd: List[str], input_text: Optional[str] = None) -> None:
    try:
        subprocess.run(cmd, input=input_text, text=True, check=True)
    except FileNotFoundError:
        print("Missing tool:", cmd[0], file=sys.stderr)
        print("Install gcc to assemble the generated program.", file=sys.stderr)
        raise
    except subprocess.CalledProcessError as e:
        raise SystemExit(f"Command failed ({e.returncode}): {' '.join(cmd)}")

def main(argv: Optional[List[str]] = None) -> int:
    import getopt
    if argv is None:
        argv = sys.argv
    try:
        opts, args = getopt.getopt(argv[1:], "dcro:")
    except getopt.GetoptError as e:
        print(f"rpncc.py: {e}", file=sys.stderr)
        print(HELP, file=sys.stderr)
        return 2

    debug = build = execute = False
    out_path = "a.out"
    for flag, val in opts:
        if flag == "-d":
            debug = True
        elif flag == "-c":
            build = True
        elif flag == "-r":
            build = execute = True
        elif flag == "-o":
            out_path = val

    if len(args) != 1:
        print(HELP, file=sys.stderr)
        return 2

    comp = Compiler(args[0])
    comp.set_debug(debug)
    try:
        asm = comp.compile()
    except CompileError as e:
        print(f"rpncc.py: {e}", file=sys.stderr)
        return 1

    if not build:
        sys.stdout.write(asm)
        return 0

    run(["gcc", "-o", out_path, "-x", "assembler", "-"], input_text=asm)
    print(f"Built {out_path}", flush=True)

    if execute:
        return subprocess.run([str(Path(out_path).resolve())]).returncode
    return 0

if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
