"""Stage functions for the build-and-extract pipeline.

Every stage takes the resolved :class:`PipelineConfig` and the current
:class:`BuildContext` and returns a new context, or raises the
:class:`StageError` subclass that belongs to it. Stages never retry and
never clean up what earlier stages produced.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Mapping, Sequence, Type

from .config import PipelineConfig
from .errors import (
    BuildError,
    CheckoutError,
    ExtractionError,
    PackagingError,
    PublishError,
    StageError,
)
from .models import BuildContext, ExtractionMethod, ImageTag
from .utils import CommandError, ensure_directory, run_command, sha256_file

logger = logging.getLogger(__name__)

VOLUME_MOUNT_TARGET = "/shipwright-out"


def _run(
    error_cls: Type[StageError],
    command: Sequence[str],
    **kwargs,
) -> subprocess.CompletedProcess[str]:
    logger.info("$ %s", " ".join(command))
    try:
        return run_command(command, **kwargs)
    except CommandError as exc:
        raise error_cls(
            f"{command[0]} {command[1]} exited with code {exc.returncode}",
            returncode=exc.returncode,
            output=exc.output,
        ) from exc
    except OSError as exc:
        raise error_cls(f"Cannot run {command[0]}: {exc}") from exc


def _build_arg_flags(args: Mapping[str, str]) -> List[str]:
    flags: List[str] = []
    for key, value in sorted(args.items()):
        flags.extend(["--build-arg", f"{key}={value}"])
    return flags


@contextmanager
def staged_descriptor(
    descriptor: Path,
    build_dir: Path,
    staged_name: str,
    error_cls: Type[StageError],
) -> Iterator[Path]:
    """Copy a descriptor into ``build_dir`` under ``staged_name`` for one build.

    The descriptor itself is never modified; the staged copy is removed when
    the block exits, whatever the outcome.
    """

    if not descriptor.is_file():
        raise error_cls(f"Descriptor not found: {descriptor}")
    target = build_dir / staged_name
    if target.resolve() == descriptor.resolve():
        raise error_cls(f"Descriptor {descriptor} must not be named {staged_name}")
    try:
        shutil.copyfile(descriptor, target)
    except OSError as exc:
        raise error_cls(f"Cannot stage {descriptor} into {build_dir}: {exc}") from exc
    logger.debug("Staged %s as %s", descriptor, target)
    try:
        yield target
    finally:
        target.unlink(missing_ok=True)


def checkout(config: PipelineConfig, context: BuildContext) -> BuildContext:
    """Replace ``source_dir`` with a fresh clone, submodules included."""

    source_dir = context.source_dir
    try:
        if source_dir.exists():
            logger.info("Removing previous checkout at %s", source_dir)
            shutil.rmtree(source_dir)
        ensure_directory(source_dir.parent)
    except OSError as exc:
        raise CheckoutError(f"Cannot prepare checkout directory {source_dir}: {exc}") from exc

    ref = config.source.ref or context.branch
    _run(CheckoutError, ["git", "clone", config.source.url, str(source_dir)])
    _run(CheckoutError, ["git", "checkout", ref], cwd=source_dir)
    _run(CheckoutError, ["git", "submodule", "update", "--init", "--recursive"], cwd=source_dir)
    return context


def build_intermediate(config: PipelineConfig, context: BuildContext) -> BuildContext:
    """Build the toolchain image that compiles the artifact."""

    tag = ImageTag.for_branch(config.intermediate_repository, context.branch)
    descriptor = config.descriptors.resolve(config.descriptors.build, context.source_dir)
    command = ["docker", "build"]
    if config.no_cache:
        command.append("--no-cache")
    command += _build_arg_flags(config.build_args)
    command += ["-t", str(tag), str(context.source_dir)]

    with staged_descriptor(descriptor, context.source_dir, config.descriptors.staged_name, BuildError):
        _run(BuildError, command)
    logger.info("Built intermediate image %s", tag)
    return context.evolve(intermediate_tag=tag)


def _copy_from_container(config: PipelineConfig, image: ImageTag, destination: Path) -> None:
    name = f"shipwright-extract-{uuid.uuid4().hex[:12]}"
    created = _run(ExtractionError, ["docker", "create", "--name", name, str(image)])
    container = created.stdout.strip() or name
    try:
        _run(
            ExtractionError,
            ["docker", "cp", "-L", f"{container}:{config.artifact.container_path}", str(destination)],
        )
    finally:
        try:
            run_command(["docker", "rm", "-f", container])
        except (CommandError, OSError) as exc:
            logger.warning("Could not remove extraction container %s: %s", container, exc)


def _copy_through_volume(config: PipelineConfig, image: ImageTag, destination: Path) -> None:
    _run(
        ExtractionError,
        [
            "docker",
            "run",
            "--rm",
            "-v",
            f"{destination.parent.resolve()}:{VOLUME_MOUNT_TARGET}",
            "--entrypoint",
            "cp",
            str(image),
            config.artifact.container_path,
            f"{VOLUME_MOUNT_TARGET}/{destination.name}",
        ],
    )


def extract_artifact(config: PipelineConfig, context: BuildContext) -> BuildContext:
    """Copy the compiled binary out of the intermediate image onto the host."""

    if context.intermediate_tag is None:
        raise ExtractionError("No intermediate image has been built for this run")

    destination = context.artifact_path
    try:
        ensure_directory(destination.parent)
        if destination.is_dir():
            shutil.rmtree(destination)
        else:
            destination.unlink(missing_ok=True)
    except OSError as exc:
        raise ExtractionError(f"Cannot clear previous artifact at {destination}: {exc}") from exc

    if config.extraction_method is ExtractionMethod.VOLUME_MOUNT:
        _copy_through_volume(config, context.intermediate_tag, destination)
    else:
        _copy_from_container(config, context.intermediate_tag, destination)

    if not destination.is_file() or destination.stat().st_size == 0:
        raise ExtractionError(
            f"{config.artifact.container_path} in {context.intermediate_tag} did not produce a non-empty file"
        )
    digest = sha256_file(destination)
    logger.info("Extracted %s (sha256 %s)", destination, digest)
    return context.evolve(artifact_sha256=digest)


def build_runtime(config: PipelineConfig, context: BuildContext) -> BuildContext:
    """Package the extracted artifact into the runtime image."""

    artifact = context.artifact_path
    if not artifact.is_file():
        raise PackagingError(f"Artifact {artifact} does not exist")
    if artifact.stat().st_size == 0:
        raise PackagingError(f"Artifact {artifact} is empty")

    build_dir = context.artifact_dir
    descriptor = config.descriptors.resolve(config.descriptors.runtime, context.source_dir)
    args = {"ARTIFACT": artifact.name, **config.runtime_args}
    command = ["docker", "build", *_build_arg_flags(args), "-t", str(context.runtime_tag), str(build_dir)]

    with staged_descriptor(descriptor, build_dir, config.descriptors.staged_name, PackagingError):
        _run(PackagingError, command)
    logger.info("Built runtime image %s", context.runtime_tag)
    return context


def publish(config: PipelineConfig, context: BuildContext) -> BuildContext:
    """Push the runtime image to the registry under each alias.

    A no-op unless publishing is enabled. The multi-tag push is best effort
    and not atomic: if a push fails, aliases pushed before it remain.
    """

    if not context.publish_enabled:
        logger.info("Publishing disabled; skipping")
        return context

    settings = config.publish
    if not settings.registry:
        raise PublishError("Publishing is enabled but no registry is configured")
    if not settings.username or settings.password is None:
        raise PublishError("Registry credentials are missing from the environment")
    if not context.build_number:
        raise PublishError("Publishing requires a build number")

    _run(
        PublishError,
        ["docker", "login", settings.registry, "-u", settings.username, "--password-stdin"],
        input=settings.password.get_secret_value(),
    )

    aliases = [context.build_number, "latest"]
    aliases += [alias for alias in settings.aliases if alias not in aliases]
    remote = ImageTag(f"{settings.registry}/{context.runtime_tag.repository}", context.runtime_tag.tag)
    pushed: List[str] = []
    for alias in aliases:
        target = str(remote.with_tag(alias))
        try:
            _run(PublishError, ["docker", "tag", str(context.runtime_tag), target])
            _run(PublishError, ["docker", "push", target])
        except PublishError as exc:
            raise PublishError(
                f"Push of {target} failed after pushing {len(pushed)} alias(es)",
                returncode=exc.returncode,
                output=exc.output,
                pushed=tuple(pushed),
            ) from exc
        pushed.append(target)
    return context.evolve(published=tuple(pushed))
