"""Error taxonomy for the vault engine.

    ValidationError      malformed or incomplete write payload (nothing touched on disk)
    NotFoundError        domain/project/path absent
    ConflictError        per-file lock not acquired within the timeout
    IndexInconsistency   index disagrees with the vault; repaired by re-indexing the path
    IngestionError       malformed session record (skipped and counted)
    ExternalToolError    summarizer invocation failed
"""

from __future__ import annotations

from pathlib import Path


class WardwellError(Exception):
    """Base class for all engine errors."""


class ValidationError(WardwellError):
    def __init__(self, problems: list[str] | str) -> None:
        self.problems = [problems] if isinstance(problems, str) else list(problems)
        super().__init__("; ".join(self.problems))


class NotFoundError(WardwellError):
    pass


class ConflictError(WardwellError):
    pass


class IndexInconsistency(WardwellError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class IngestionError(WardwellError):
    def __init__(self, source: Path | str, offset: int, reason: str) -> None:
        self.source = str(source)
        self.offset = offset
        self.reason = reason
        super().__init__(f"{source}@{offset}: {reason}")


class ExternalToolError(WardwellError):
    pass
