"""Exception taxonomy shared by the pipeline, the store and the media tools."""

from __future__ import annotations


class ConfigurationError(RuntimeError):
    """Missing binaries or credentials; raised before any work starts."""


class ProcessFailedError(RuntimeError):
    def __init__(self, returncode, argv, output=""):
        self.returncode = returncode
        self.argv = list(argv or [])
        self.output = output or ""
        program = self.argv[0] if self.argv else "process"
        tail = self.output.strip().splitlines()[-1:] if self.output else []
        detail = f": {tail[0]}" if tail else ""
        super().__init__(f"{program} exited with code {returncode}{detail}")


class ProcessTimeoutError(RuntimeError):
    def __init__(self, argv, timeout_seconds, output=""):
        self.argv = list(argv or [])
        self.timeout_seconds = timeout_seconds
        self.output = output or ""
        program = self.argv[0] if self.argv else "process"
        super().__init__(f"{program} killed after {timeout_seconds:g}s wall-clock timeout")


class MergeValidationError(RuntimeError):
    """A merge input or output failed the existence/size checks."""


class TranscodeError(RuntimeError):
    pass


class StoreClosedError(RuntimeError):
    """Episode store used before open() or after close()."""


class DuplicateEpisodeError(RuntimeError):
    """Another path already owns this episode identity. Never retried."""

    def __init__(self, message, *, existing_episode_id=None, reason=None):
        super().__init__(message)
        self.existing_episode_id = existing_episode_id
        self.reason = reason


class ConcurrentModificationError(RuntimeError):
    """The row is locked by another transaction; retry later."""


class EpisodeNotFoundError(LookupError):
    pass


class ValidationFailureError(RuntimeError):
    """A write appeared to commit but the read-back disagrees."""

    def __init__(self, message, *, mismatches=None):
        super().__init__(message)
        self.mismatches = dict(mismatches or {})


class PipelineStageError(RuntimeError):
    """Failure wrapped with the pipeline stage that produced it."""

    def __init__(self, stage, cause):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}")
