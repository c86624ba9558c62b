"""Build a service binary in a container, extract it, and package it into a runtime image."""

from .config import PipelineConfig, PipelineSettings, load_config
from .models import BuildContext, ExtractionMethod, ImageTag
from .pipeline import BuildPipeline, PipelineState, Stage

__all__ = [
    "BuildContext",
    "BuildPipeline",
    "ExtractionMethod",
    "ImageTag",
    "PipelineConfig",
    "PipelineSettings",
    "PipelineState",
    "Stage",
    "load_config",
]
