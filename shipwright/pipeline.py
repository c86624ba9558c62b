from __future__ import annotations

import datetime as _dt
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from . import stages
from .config import PipelineConfig
from .errors import EXIT_CANCELLED, EXIT_SUCCESS, ConfigError, StageError
from .models import BuildContext, ImageTag, StageResult, branch_tag
from .utils import dump_json, workspace_lock

logger = logging.getLogger(__name__)


class Stage(Enum):
    CHECKOUT = "checkout"
    BUILD = "build"
    EXTRACT = "extract"
    PACKAGE = "package"
    PUBLISH = "publish"

    @classmethod
    def ordered(cls) -> Iterable["Stage"]:
        return (cls.CHECKOUT, cls.BUILD, cls.EXTRACT, cls.PACKAGE, cls.PUBLISH)


class PipelineState(Enum):
    INIT = "init"
    CHECKOUT = "checkout"
    BUILDING = "building"
    EXTRACTING = "extracting"
    PACKAGING = "packaging"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.FAILED)


StageHandler = Callable[[PipelineConfig, BuildContext], BuildContext]

_STAGE_HANDLERS: Dict[Stage, StageHandler] = {
    Stage.CHECKOUT: stages.checkout,
    Stage.BUILD: stages.build_intermediate,
    Stage.EXTRACT: stages.extract_artifact,
    Stage.PACKAGE: stages.build_runtime,
    Stage.PUBLISH: stages.publish,
}

_STAGE_STATES: Dict[Stage, PipelineState] = {
    Stage.CHECKOUT: PipelineState.CHECKOUT,
    Stage.BUILD: PipelineState.BUILDING,
    Stage.EXTRACT: PipelineState.EXTRACTING,
    Stage.PACKAGE: PipelineState.PACKAGING,
    Stage.PUBLISH: PipelineState.PUBLISHING,
}


@dataclass
class PipelineRun:
    """Outcome of one pipeline invocation."""

    state: PipelineState
    context: BuildContext
    results: List[StageResult] = field(default_factory=list)
    error: Optional[StageError] = None
    cancelled: bool = False

    @property
    def exit_code(self) -> int:
        if self.state is PipelineState.DONE:
            return EXIT_SUCCESS
        if self.cancelled:
            return EXIT_CANCELLED
        return self.error.exit_code if self.error is not None else 1

    @property
    def failed_stage(self) -> Optional[str]:
        if self.error is not None:
            return self.error.stage
        if self.cancelled and self.results:
            return self.results[-1].name
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "exit_code": self.exit_code,
            "context": self.context.to_dict(),
            "stages": [result.to_dict() for result in self.results],
            "error": self.error.to_dict() if self.error is not None else None,
            "cancelled": self.cancelled,
            "finished_at": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        }


class BuildPipeline:
    """Runs checkout, build, extract, package and publish in order for one branch.

    Each call to :meth:`run` starts from ``init``; nothing from an earlier
    run is reused except the deterministic tags and paths it overwrites.
    """

    def __init__(
        self,
        config: PipelineConfig,
        branch: str,
        *,
        build_number: Optional[str] = None,
        handlers: Optional[Dict[Stage, StageHandler]] = None,
    ) -> None:
        if not branch or not branch.strip():
            raise ConfigError("A branch identifier is required")
        self.config = config
        self.branch = branch
        self.build_number = build_number
        self.handlers = dict(_STAGE_HANDLERS if handlers is None else handlers)
        self.state = PipelineState.INIT

    @property
    def workspace_dir(self) -> Path:
        return self.config.workspace_root / branch_tag(self.branch)

    @property
    def record_path(self) -> Path:
        return self.workspace_dir / "state" / "last_run.json"

    def initial_context(self) -> BuildContext:
        workspace = self.workspace_dir
        return BuildContext(
            branch=self.branch,
            workspace_dir=workspace,
            source_dir=workspace / "src",
            artifact_path=workspace / "artifacts" / self.config.artifact.name,
            runtime_tag=ImageTag.for_branch(self.config.repository, self.branch),
            publish_enabled=self.config.publish.enabled,
            build_number=self.build_number,
        )

    def image_tags(self) -> Dict[str, str]:
        return {
            "intermediate": str(ImageTag.for_branch(self.config.intermediate_repository, self.branch)),
            "runtime": str(ImageTag.for_branch(self.config.repository, self.branch)),
        }

    def run(self) -> PipelineRun:
        """Execute every stage under the workspace lock and record the outcome."""

        context = self.initial_context()
        self.state = PipelineState.INIT
        outcome = PipelineRun(state=self.state, context=context)
        lock_path = context.workspace_dir / ".lock"
        with workspace_lock(lock_path, timeout=self.config.lock_timeout_s):
            try:
                self._run_stages(outcome)
            except KeyboardInterrupt:
                dump_json(self.record_path, outcome.to_dict())
                raise
        dump_json(self.record_path, outcome.to_dict())
        return outcome

    def _run_stages(self, outcome: PipelineRun) -> PipelineRun:
        context = outcome.context
        for stage in Stage.ordered():
            self.state = _STAGE_STATES[stage]
            logger.info("Stage %s started for branch %s", stage.value, self.branch)
            started = time.perf_counter()
            try:
                context = self.handlers[stage](self.config, context)
            except KeyboardInterrupt:
                self.state = outcome.state = PipelineState.FAILED
                outcome.cancelled = True
                outcome.results.append(
                    StageResult(stage.value, "cancelled", {"duration_s": _elapsed(started)})
                )
                logger.error("Stage %s cancelled for branch %s", stage.value, self.branch)
                raise
            except StageError as exc:
                self.state = PipelineState.FAILED
                logger.error(
                    "Stage %s failed (exit code %s): %s\n%s",
                    stage.value,
                    exc.returncode,
                    exc,
                    exc.output,
                )
                outcome.results.append(
                    StageResult(stage.value, "failed", {**exc.to_dict(), "duration_s": _elapsed(started)})
                )
                outcome.state = self.state
                outcome.error = exc
                return outcome

            status = "skipped" if stage is Stage.PUBLISH and not context.publish_enabled else "completed"
            outcome.context = context
            outcome.results.append(StageResult(stage.value, status, {"duration_s": _elapsed(started)}))
            logger.info("Stage %s %s", stage.value, status)

        self.state = PipelineState.DONE
        outcome.state = self.state
        return outcome

    def last_run(self) -> Optional[Dict[str, object]]:
        """Return the record written by the most recent run, if any."""

        if not self.record_path.exists():
            return None
        return json.loads(self.record_path.read_text())


def _elapsed(started: float) -> float:
    return round(time.perf_counter() - started, 3)
