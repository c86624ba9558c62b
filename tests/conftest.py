"""
Shared fixtures for pipeline tests.

``FakeRunner`` stands in for ``shipwright.stages.run_command``: it records
every command, simulates the filesystem effects of ``git clone``,
``docker cp`` and ``docker run -v`` and fails any command whose prefix was
registered with :meth:`FakeRunner.fail`. No daemon or network is touched.
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from shipwright.config import PipelineConfig
from shipwright.models import BuildContext
from shipwright.pipeline import BuildPipeline
from shipwright.utils import CommandError

ARTIFACT_BYTES = b"\x7fELF\x02\x01\x01fake-saga-binary"

DESCRIPTORS = {
    "docker/Dockerfile.build": "FROM rust:1.70\nCOPY . /app\nRUN cargo build --release\n",
    "docker/Dockerfile.run": "FROM debian:stable-slim\nARG ARTIFACT\nCOPY ${ARTIFACT} /app/\n",
}

ENV_VARS = (
    "SHIPWRIGHT_BRANCH",
    "BRANCH_NAME",
    "GIT_BRANCH",
    "SHIPWRIGHT_BUILD_NUMBER",
    "BUILD_NUMBER",
    "SHIPWRIGHT_RUN_MODE",
    "RUN_MODE",
    "SHIPWRIGHT_WORKSPACE",
    "SHIPWRIGHT_PUBLISH_ENABLED",
    "SHIPWRIGHT_REGISTRY",
    "SHIPWRIGHT_REGISTRY_USERNAME",
    "SHIPWRIGHT_REGISTRY_PASSWORD",
)


@dataclass
class Call:
    command: List[str]
    cwd: Optional[str]
    input: Optional[str]
    staged_descriptor: Optional[str] = None


class FakeRunner:
    def __init__(self) -> None:
        self.calls: List[Call] = []
        self.failures: Dict[Tuple[str, ...], Tuple[int, str]] = {}
        self.artifact_bytes = ARTIFACT_BYTES
        self.source_files = dict(DESCRIPTORS)

    def fail(self, *prefix: str, returncode: int = 1, stderr: str = "boom") -> None:
        self.failures[tuple(prefix)] = (returncode, stderr)

    def commands(self, *prefix: str) -> List[List[str]]:
        return [call.command for call in self.calls if tuple(call.command[: len(prefix)]) == prefix]

    def __call__(
        self,
        command: Sequence[str],
        *,
        cwd=None,
        env=None,
        input: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        command = list(command)
        call = Call(command=command, cwd=str(cwd) if cwd else None, input=input)
        self.calls.append(call)

        for prefix, (returncode, stderr) in self.failures.items():
            if tuple(command[: len(prefix)]) == prefix:
                if check:
                    raise CommandError(command, returncode, "", stderr)
                return subprocess.CompletedProcess(command, returncode, "", stderr)

        stdout = ""
        if command[:2] == ["git", "clone"]:
            target = Path(command[-1])
            target.mkdir(parents=True)
            for relative, text in self.source_files.items():
                (target / relative).parent.mkdir(parents=True, exist_ok=True)
                (target / relative).write_text(text)
        elif command[:2] == ["docker", "build"]:
            staged = Path(command[-1]) / "Dockerfile"
            call.staged_descriptor = staged.read_text() if staged.exists() else None
        elif command[:2] == ["docker", "create"]:
            stdout = "c0ffee\n"
        elif command[:2] == ["docker", "cp"]:
            Path(command[-1]).write_bytes(self.artifact_bytes)
        elif command[:2] == ["docker", "run"]:
            host_dir = command[command.index("-v") + 1].split(":", 1)[0]
            (Path(host_dir) / Path(command[-1]).name).write_bytes(self.artifact_bytes)
        return subprocess.CompletedProcess(command, 0, stdout, "")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def runner(monkeypatch) -> FakeRunner:
    fake = FakeRunner()
    monkeypatch.setattr("shipwright.stages.run_command", fake)
    return fake


def make_config_data(tmp_path: Path, **overrides) -> dict:
    data = {
        "image": {"repository": "saga"},
        "source": {"url": "https://git.example.com/saga-coordinator.git"},
        "descriptors": {"build": "docker/Dockerfile.build", "runtime": "docker/Dockerfile.run"},
        "artifact": {"container_path": "/app/target/release/saga_coordinator"},
        "workspace": {"root": str(tmp_path / "ws"), "lock_timeout_s": 0},
    }
    data.update(overrides)
    return data


@pytest.fixture
def config(tmp_path: Path) -> PipelineConfig:
    return PipelineConfig.from_dict(make_config_data(tmp_path))


@pytest.fixture
def context(config: PipelineConfig) -> BuildContext:
    """Context for branch ``main`` with the descriptors already checked out."""
    ctx = BuildPipeline(config, "main").initial_context()
    for relative, text in DESCRIPTORS.items():
        (ctx.source_dir / relative).parent.mkdir(parents=True, exist_ok=True)
        (ctx.source_dir / relative).write_text(text)
    return ctx
