from __future__ import annotations

from typing import Optional

EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 2
EXIT_CHECKOUT_FAILED = 3
EXIT_BUILD_FAILED = 4
EXIT_EXTRACTION_FAILED = 5
EXIT_PACKAGING_FAILED = 6
EXIT_PUBLISH_FAILED = 7
EXIT_LOCK_TIMEOUT = 8
EXIT_CANCELLED = 130


class ConfigError(RuntimeError):
    """Raised when the pipeline configuration cannot be loaded or is incomplete."""

    exit_code = EXIT_CONFIG_ERROR


class StageError(RuntimeError):
    """Base class for failures that abort the pipeline at a stage boundary.

    ``returncode`` and ``output`` hold the raw exit status and combined
    stdout/stderr of the command that failed, when there was one.
    """

    stage = "unknown"
    exit_code = 1

    def __init__(self, message: str, *, returncode: Optional[int] = None, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "error": type(self).__name__,
            "message": str(self),
            "returncode": self.returncode,
            "output": self.output,
        }


class CheckoutError(StageError):
    stage = "checkout"
    exit_code = EXIT_CHECKOUT_FAILED


class BuildError(StageError):
    stage = "build"
    exit_code = EXIT_BUILD_FAILED


class ExtractionError(StageError):
    stage = "extract"
    exit_code = EXIT_EXTRACTION_FAILED


class PackagingError(StageError):
    stage = "package"
    exit_code = EXIT_PACKAGING_FAILED


class PublishError(StageError):
    """Raised when registry login or a push fails.

    Pushes are not atomic: ``pushed`` lists the aliases that reached the
    registry before the failure.
    """

    stage = "publish"
    exit_code = EXIT_PUBLISH_FAILED

    def __init__(self, message: str, *, pushed: tuple = (), **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.pushed = tuple(pushed)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["pushed"] = list(self.pushed)
        return data
