import math
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import rpncc


def result(stdout):
    """Extract the number from a 'Result N' line."""
    assert stdout.startswith("Result "), stdout
    return float(stdout.split()[1])


# ---------- Basic ----------

def test_addition(compile_and_run):
    assert compile_and_run("3 4 +") == "Result 7\n"


def test_single_number(compile_and_run_rc):
    out, rc = compile_and_run_rc("42")
    assert out == "Result 42\n"
    assert rc == 0


def test_arithmetic(compile_and_run):
    assert compile_and_run("10 4 -") == "Result 6\n"
    assert compile_and_run("3 7 *") == "Result 21\n"
    assert compile_and_run("20 8 /") == "Result 2.5\n"
    assert compile_and_run("1.5 -2 *") == "Result -3\n"


def test_modulus_truncates(compile_and_run):
    assert compile_and_run("17 5 %") == "Result 2\n"
    assert compile_and_run("17.9 5.9 %") == "Result 2\n"
    assert compile_and_run("-7 3 %") == "Result -1\n"
    assert compile_and_run("9 -1 %") == "Result 0\n"


def test_power(compile_and_run):
    assert compile_and_run("2 8 ^") == "Result 256\n"
    assert compile_and_run("2 1 ^") == "Result 2\n"
    assert compile_and_run("2 12 ^") == "Result 4096\n"
    assert compile_and_run("-1 5 ^") == "Result -1\n"
    assert compile_and_run("-1 4 ^") == "Result 1\n"


def test_negative_exponent_is_zero(compile_and_run):
    assert compile_and_run("2 -3 ^") == "Result 0\n"


def test_power_of_zero_is_zero(compile_and_run):
    assert compile_and_run("2 0 ^") == "Result 0\n"


def test_factorial(compile_and_run):
    assert compile_and_run("5 !") == "Result 120\n"
    assert compile_and_run("0 !") == "Result 0\n"
    assert compile_and_run("-3 !") == "Result 0\n"


# ---------- Stack operations ----------

def test_dup(compile_and_run):
    assert compile_and_run("3 dup ^") == "Result 27\n"


def test_swap(compile_and_run):
    assert compile_and_run("3 5 swap -") == "Result 2\n"


def test_repeated_ops_get_unique_labels(compile_and_run):
    assert compile_and_run("2 2 ^ 2 ^ 3 ! +") == "Result 22\n"


# ---------- Floating point functions ----------

def test_sqrt(compile_and_run):
    assert compile_and_run("9 sqrt") == "Result 3\n"


def test_abs(compile_and_run):
    assert compile_and_run("-4.5 abs") == "Result 4.5\n"


def test_trig(compile_and_run):
    assert math.isclose(result(compile_and_run("0 cos")), 1.0)
    assert math.isclose(result(compile_and_run("pi 2 / sin")), 1.0, rel_tol=1e-5)
    assert math.isclose(result(compile_and_run("1 tan")), math.tan(1), rel_tol=1e-5)


def test_named_constants(compile_and_run):
    assert math.isclose(result(compile_and_run("pi")), math.pi, rel_tol=1e-5)
    assert math.isclose(result(compile_and_run("e 1 *")), math.e, rel_tol=1e-5)


def test_trig_out_of_range(compile_and_run):
    # 1e20 is beyond what fsin/fcos can reduce
    for expr in ("10000000000 dup * sin", "10000000000 dup * cos",
                 "10000000000 dup * tan"):
        assert compile_and_run(expr) == "Overflow - value out of range.  Aborting\n"


# ---------- Run-time errors ----------

def test_division_by_zero(compile_and_run_rc):
    out, rc = compile_and_run_rc("3 0 /")
    assert out == "Attempted division by zero.  Aborting\n"
    assert rc == 1


def test_modulus_by_zero(compile_and_run):
    assert compile_and_run("3 0.5 %") == "Attempted division by zero.  Aborting\n"


def test_too_few_operands(compile_and_run_rc):
    out, rc = compile_and_run_rc("4 +")
    assert out == "Insufficient entries on the stack.  Aborting\n"
    assert rc == 1


def test_too_many_values(compile_and_run_rc):
    out, rc = compile_and_run_rc("3 3 3 +")
    assert out == "Too many entries remaining on the stack.  Aborting\n"
    assert rc == 1


def test_power_overflow(compile_and_run):
    assert compile_and_run("2 64 ^") == "Overflow - value out of range.  Aborting\n"


def test_factorial_overflow(compile_and_run):
    assert compile_and_run("25 !") == "Overflow - value out of range.  Aborting\n"


# ---------- Driver ----------

def test_main_prints_assembly(capsys):
    assert rpncc.main(["rpncc.py", "3 4 +"]) == 0
    out = capsys.readouterr().out
    assert out == rpncc.Compiler("3 4 +").compile()


def test_main_debug_flag(capsys):
    assert rpncc.main(["rpncc.py", "-d", "3 4 +"]) == 0
    assert "int3" in capsys.readouterr().out


def test_main_reports_compile_error(capsys):
    assert rpncc.main(["rpncc.py", "3 5 $"]) == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Unknown token $" in captured.err


def test_main_usage(capsys):
    assert rpncc.main(["rpncc.py"]) == 2
    assert rpncc.main(["rpncc.py", "-x", "3"]) == 2
    assert "Usage" in capsys.readouterr().err


def test_main_negative_leading_expression(capsys):
    assert rpncc.main(["rpncc.py", "--", "-4.5 abs"]) == 0
    assert "const_neg_4_5" in capsys.readouterr().out


def test_main_run_returns_program_status(tmp_path, capfd, native_toolchain):
    out_bin = tmp_path / "run_bin"
    assert rpncc.main(["rpncc.py", "-r", "-o", str(out_bin), "--", "3 0 /"]) == 1
    assert "Attempted division by zero.  Aborting" in capfd.readouterr().out

    assert rpncc.main(["rpncc.py", "-r", "-o", str(out_bin), "--", "3 4 +"]) == 0
    assert "Result 7" in capfd.readouterr().out
