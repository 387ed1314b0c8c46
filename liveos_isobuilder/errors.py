from __future__ import annotations

import contextlib
import logging
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)


class LiveOSBuildError(RuntimeError):
    """Base class for every failure raised by the builder."""


class MissingArtifactError(LiveOSBuildError):
    pass


class GrubConfigError(LiveOSBuildError):
    pass


class ConfigConflictError(LiveOSBuildError, ValueError):
    pass


class CommandError(LiveOSBuildError):
    def __init__(self, message: str, *, argv: list[str], returncode: int, stderr: str) -> None:
        super().__init__(message)
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


class CleanupError(LiveOSBuildError):
    pass


def merge_cleanup_error(error: Optional[BaseException], cleanup_error: BaseException) -> CleanupError:
    """Combine a teardown failure with the error that was already propagating (if any)."""

    if error is None:
        return CleanupError(f"failed to clean-up: {cleanup_error}")
    return CleanupError(f"{error}\nfailed to clean-up: {cleanup_error}")


@contextlib.contextmanager
def releasing(release: Callable[[], None], what: str) -> Iterator[None]:
    """Run `release` when the block exits, whatever the outcome.

    A release failure while the block is already raising is merged into a
    CleanupError chained to the original exception, so neither symptom is lost.
    """

    try:
        yield
    except BaseException as e:
        try:
            release()
        except Exception as cleanup_error:
            logger.error("Failed to release %s: %s", what, cleanup_error)
            raise merge_cleanup_error(e, cleanup_error) from e
        raise
    else:
        try:
            release()
        except Exception as cleanup_error:
            raise CleanupError(f"failed to release {what}: {cleanup_error}") from cleanup_error


@contextlib.contextmanager
def released_on_error(release: Callable[[], None], what: str) -> Iterator[None]:
    """Like `releasing`, but keeps the resource when the block succeeds."""

    try:
        yield
    except BaseException as e:
        try:
            release()
        except Exception as cleanup_error:
            logger.error("Failed to release %s: %s", what, cleanup_error)
            raise merge_cleanup_error(e, cleanup_error) from e
        raise
