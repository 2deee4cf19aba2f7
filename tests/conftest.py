import platform
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

import rpncc


def _require_toolchain() -> None:
    if shutil.which("gcc") is None:
        pytest.skip("gcc is not installed")
    if platform.system() != "Linux" or platform.machine() not in ("x86_64", "AMD64"):
        pytest.skip("generated code targets x86-64 Linux")


def _build(tmp_path, expr: str) -> Path:
    _require_toolchain()
    out_bin = tmp_path / "test_bin"
    # "--" keeps expressions like "-4.5 abs" from being read as flags
    rc = rpncc.main(["rpncc.py", "-c", "-o", str(out_bin), "--", expr])
    assert rc == 0, f"rpncc.py compilation failed (rc={rc})"
    return out_bin


@pytest.fixture
def native_toolchain():
    """Skip unless gcc can build and run x86-64 Linux binaries here."""
    _require_toolchain()


@pytest.fixture
def compile_and_run(tmp_path):
    """Return a helper that compiles an expression with rpncc.py and runs the binary."""

    def _run(expr: str) -> str:
        out_bin = _build(tmp_path, expr)
        result = subprocess.run(
            [str(out_bin)],
            capture_output=True,
            text=True,
            timeout=10,
        )
        return result.stdout

    return _run


@pytest.fixture
def compile_and_run_rc(tmp_path):
    """Like compile_and_run but returns (stdout, returncode)."""

    def _run(expr: str):
        out_bin = _build(tmp_path, expr)
        result = subprocess.run(
            [str(out_bin)],
            capture_output=True,
            text=True,
            timeout=10,
        )
        return result.stdout, result.returncode

    return _run
