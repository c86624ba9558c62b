from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

MAX_TAG_LENGTH = 128
_VALID_TAG = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.-]*")
_DIGEST_SUFFIX = re.compile(r"-[0-9a-f]{8}\Z")
_INVALID_TAG_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


class ExtractionMethod(str, Enum):
    """How the compiled artifact is copied out of the intermediate image."""

    RUN_COPY = "run-copy"
    VOLUME_MOUNT = "volume-mount"


def branch_tag(branch: str) -> str:
    """Derive a docker tag from a branch identifier.

    Branches that already form a valid tag are used verbatim. Anything else
    is sanitized and suffixed with a short digest of the raw identifier, so
    ``feature/x`` and ``feature-x`` never share a tag. A verbatim tag never
    ends in ``-<8 hex digits>``, so it cannot equal a digested one.
    """

    if not branch.strip():
        raise ValueError("Branch identifier must not be empty")
    if (
        _VALID_TAG.fullmatch(branch)
        and len(branch) <= MAX_TAG_LENGTH
        and not _DIGEST_SUFFIX.search(branch)
    ):
        return branch

    digest = hashlib.sha256(branch.encode("utf-8")).hexdigest()[:8]
    slug = _INVALID_TAG_CHARS.sub("-", branch).strip("-.") or "branch"
    slug = slug[: MAX_TAG_LENGTH - len(digest) - 1].rstrip("-.")
    return f"{slug}-{digest}"


@dataclass(frozen=True)
class ImageTag:
    """A ``repository:tag`` image reference."""

    repository: str
    tag: str

    @classmethod
    def for_branch(cls, repository: str, branch: str) -> "ImageTag":
        return cls(repository=repository, tag=branch_tag(branch))

    def with_tag(self, tag: str) -> "ImageTag":
        return replace(self, tag=tag)

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}"


@dataclass(frozen=True)
class BuildContext:
    """State threaded through the pipeline stages for a single invocation."""

    branch: str
    workspace_dir: Path
    source_dir: Path
    artifact_path: Path
    runtime_tag: ImageTag
    intermediate_tag: Optional[ImageTag] = None
    publish_enabled: bool = False
    build_number: Optional[str] = None
    artifact_sha256: Optional[str] = None
    published: Tuple[str, ...] = ()

    @property
    def artifact_dir(self) -> Path:
        return self.artifact_path.parent

    def evolve(self, **changes: Any) -> "BuildContext":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch": self.branch,
            "workspace_dir": str(self.workspace_dir),
            "source_dir": str(self.source_dir),
            "artifact_path": str(self.artifact_path),
            "intermediate_tag": str(self.intermediate_tag) if self.intermediate_tag else None,
            "runtime_tag": str(self.runtime_tag),
            "publish_enabled": self.publish_enabled,
            "build_number": self.build_number,
            "artifact_sha256": self.artifact_sha256,
            "published": list(self.published),
        }


@dataclass
class StageResult:
    """Summary emitted by a pipeline stage."""

    name: str
    status: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.name, "status": self.status, "details": self.details}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        return cls(
            name=data.get("stage", ""),
            status=data.get("status", "unknown"),
            details=data.get("details", {}),
        )
