from __future__ import annotations

import sys
from pathlib import Path

import pytest

from shipwright.utils import (
    CommandError,
    LockTimeoutError,
    dump_json,
    run_command,
    sha256_file,
    workspace_lock,
)


def test_run_command_captures_output() -> None:
    result = run_command([sys.executable, "-c", "print('built')"])
    assert result.stdout.strip() == "built"


def test_run_command_passes_stdin() -> None:
    result = run_command([sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"], input="token")
    assert result.stdout.strip() == "TOKEN"


def test_run_command_raises_with_output() -> None:
    script = "import sys; sys.stderr.write('no such file'); sys.exit(3)"
    with pytest.raises(CommandError) as excinfo:
        run_command([sys.executable, "-c", script])
    assert excinfo.value.returncode == 3
    assert excinfo.value.output == "no such file"


def test_run_command_unchecked() -> None:
    result = run_command([sys.executable, "-c", "raise SystemExit(1)"], check=False)
    assert result.returncode == 1


def test_sha256_file_and_dump_json(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "record.json"
    dump_json(target, {"b": 1, "a": 2})
    assert target.read_text() == '{\n  "a": 2,\n  "b": 1\n}\n'
    assert len(sha256_file(target)) == 64


def test_workspace_lock_is_exclusive_and_released(tmp_path: Path) -> None:
    lock = tmp_path / "ws" / ".lock"
    with workspace_lock(lock, timeout=0):
        with pytest.raises(LockTimeoutError):
            with workspace_lock(lock, timeout=0):
                pass
    with workspace_lock(lock, timeout=0):
        pass
