"""Pipeline configuration.

Configuration is layered: a base file (``pipeline.yaml``), an optional
overlay for the current run mode (``pipeline.<run_mode>.yaml``) merged on
top of it, and finally environment variables read through
:class:`PipelineSettings`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .models import ExtractionMethod

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "pipeline.yaml"
DEFAULT_WORKSPACE = ".shipwright"


class PipelineSettings(BaseSettings):
    """Values supplied by the CI environment rather than the config file."""

    model_config = SettingsConfigDict(
        env_prefix="SHIPWRIGHT_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    branch: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SHIPWRIGHT_BRANCH", "BRANCH_NAME", "GIT_BRANCH"),
    )
    build_number: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SHIPWRIGHT_BUILD_NUMBER", "BUILD_NUMBER"),
    )
    run_mode: str = Field(
        default="development",
        validation_alias=AliasChoices("SHIPWRIGHT_RUN_MODE", "RUN_MODE"),
    )
    workspace: Optional[Path] = None
    publish_enabled: Optional[bool] = None
    registry: Optional[str] = None
    registry_username: Optional[str] = None
    registry_password: Optional[SecretStr] = None

    @field_validator("branch")
    @classmethod
    def _strip_remote(cls, value: Optional[str]) -> Optional[str]:
        # GIT_BRANCH is reported as "origin/<branch>"
        if value and value.startswith("origin/"):
            return value[len("origin/"):]
        return value


@dataclass
class SourceConfig:
    url: str
    ref: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SourceConfig":
        return cls(url=_require(data, "url", "source"), ref=data.get("ref"))


@dataclass
class DescriptorConfig:
    """Build and runtime descriptors plus the filename they are staged under."""

    build: str = "Dockerfile.build"
    runtime: str = "Dockerfile.runtime"
    staged_name: str = "Dockerfile"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DescriptorConfig":
        return cls(
            build=data.get("build", "Dockerfile.build"),
            runtime=data.get("runtime", "Dockerfile.runtime"),
            staged_name=data.get("staged_name", "Dockerfile"),
        )

    def resolve(self, descriptor: str, source_dir: Path) -> Path:
        path = Path(descriptor)
        return path if path.is_absolute() else source_dir / path


@dataclass
class ArtifactConfig:
    container_path: str
    name: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ArtifactConfig":
        container_path = _require(data, "container_path", "artifact")
        if not container_path.startswith("/"):
            raise ConfigError("artifact.container_path must be an absolute in-container path")
        name = data.get("name") or Path(container_path).name
        return cls(container_path=container_path, name=name)


@dataclass
class PublishConfig:
    """Registry push settings. Credentials only ever come from the environment."""

    enabled: bool = False
    registry: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    username: Optional[str] = None
    password: Optional[SecretStr] = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PublishConfig":
        return cls(
            enabled=bool(data.get("enabled", False)),
            registry=data.get("registry"),
            aliases=[str(alias) for alias in data.get("aliases", [])],
        )


@dataclass
class PipelineConfig:
    """Fully resolved pipeline definition."""

    repository: str
    intermediate_repository: str
    source: SourceConfig
    artifact: ArtifactConfig
    descriptors: DescriptorConfig = field(default_factory=DescriptorConfig)
    extraction_method: ExtractionMethod = ExtractionMethod.RUN_COPY
    no_cache: bool = True
    build_args: Dict[str, str] = field(default_factory=dict)
    runtime_args: Dict[str, str] = field(default_factory=dict)
    publish: PublishConfig = field(default_factory=PublishConfig)
    workspace_root: Path = Path(DEFAULT_WORKSPACE)
    lock_timeout_s: float = 300.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        image = data.get("image") or {}
        repository = _require(image, "repository", "image")
        method = (data.get("extraction") or {}).get("method", ExtractionMethod.RUN_COPY.value)
        try:
            extraction_method = ExtractionMethod(method)
        except ValueError as exc:
            choices = ", ".join(m.value for m in ExtractionMethod)
            raise ConfigError(f"Unknown extraction.method {method!r}; expected one of: {choices}") from exc

        intermediate_repository = image.get("intermediate_repository", f"{repository}-build")
        if intermediate_repository == repository:
            raise ConfigError(
                f"image.intermediate_repository must differ from image.repository ({repository!r})"
            )

        build = data.get("build") or {}
        workspace = data.get("workspace") or {}
        return cls(
            repository=repository,
            intermediate_repository=intermediate_repository,
            source=SourceConfig.from_dict(data.get("source") or {}),
            artifact=ArtifactConfig.from_dict(data.get("artifact") or {}),
            descriptors=DescriptorConfig.from_dict(data.get("descriptors") or {}),
            extraction_method=extraction_method,
            no_cache=bool(build.get("no_cache", True)),
            build_args=_string_map(build.get("args", {})),
            runtime_args=_string_map((data.get("runtime") or {}).get("args", {})),
            publish=PublishConfig.from_dict(data.get("publish") or {}),
            workspace_root=Path(workspace.get("root", DEFAULT_WORKSPACE)),
            lock_timeout_s=float(workspace.get("lock_timeout_s", 300.0)),
        )

    def with_settings(self, settings: PipelineSettings) -> "PipelineConfig":
        """Apply environment overrides on top of the file configuration."""

        publish = replace(
            self.publish,
            enabled=self.publish.enabled if settings.publish_enabled is None else settings.publish_enabled,
            registry=settings.registry or self.publish.registry,
            username=settings.registry_username,
            password=settings.registry_password,
        )
        return replace(
            self,
            publish=publish,
            workspace_root=Path(settings.workspace) if settings.workspace else self.workspace_root,
        )


def _require(data: Mapping[str, Any], key: str, section: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise ConfigError(f"Missing required config key: {section}.{key}")
    return value


def _string_map(data: Mapping[str, Any]) -> Dict[str, str]:
    if not isinstance(data, Mapping):
        raise ConfigError("Build arguments must be a mapping of names to values")
    return {str(key): str(value) for key, value in data.items()}


def _parse(path: Path) -> Dict[str, Any]:
    raw_text = path.read_text()
    try:
        raw_data = json.loads(raw_text)
    except json.JSONDecodeError:
        try:
            raw_data = yaml.safe_load(raw_text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Cannot parse pipeline config {path}: {exc}") from exc

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ConfigError(f"Pipeline config {path} must contain a mapping at the top level")
    return raw_data


def merge_layers(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``overlay`` onto ``base``; overlay values win."""

    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_layers(merged[key], value)
        else:
            merged[key] = value
    return merged


def overlay_path(path: Path, run_mode: str) -> Path:
    return path.with_name(f"{path.stem}.{run_mode}{path.suffix}")


def load_config(path: str | Path, settings: Optional[PipelineSettings] = None) -> PipelineConfig:
    """Load the base config, its run-mode overlay and the environment overrides."""

    settings = settings if settings is not None else PipelineSettings()
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Pipeline config not found: {path}")

    data = _parse(path)
    overlay = overlay_path(path, settings.run_mode)
    if overlay.exists():
        logger.info("Applying %s overlay from %s", settings.run_mode, overlay)
        data = merge_layers(data, _parse(overlay))

    return PipelineConfig.from_dict(data).with_settings(settings)
