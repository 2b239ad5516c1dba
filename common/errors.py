# common/errors.py
from __future__ import annotations
from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base for every error a capture-to-memory run can surface.

    `kind` is the class name; callers show `kind` + `message` to the user.
    """

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}" if self.message else self.kind


class NotConfigured(PipelineError):
    pass


class CaptureFailed(PipelineError):
    pass


class DurationUnknown(PipelineError):
    pass


class FrameExtractionFailed(PipelineError):
    """One timestamp could not be extracted. Absorbed by the sampler."""


class NoFramesExtracted(PipelineError):
    pass


class EncodingFailed(PipelineError):
    pass


class InvalidInput(PipelineError):
    pass


class UpstreamError(PipelineError):
    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        if self.status_code is not None:
            d["status_code"] = self.status_code
        return d


class NarrationFailed(PipelineError):
    pass


class UploadFailed(PipelineError):
    pass


class PersistFailed(PipelineError):
    pass


class QueryFailed(PipelineError):
    pass


class PipelineBusy(PipelineError):
    pass


class RunCancelled(PipelineError):
    pass
