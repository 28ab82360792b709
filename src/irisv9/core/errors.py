FORMAT_FAIL = "FORMAT_FAIL"
PREREQ_FAIL = "PREREQ_FAIL"
LOW_QUALITY = "LOW_QUALITY"
NO_LIMBUS = "NO_LIMBUS"
NO_PUPIL_EDGE = "NO_PUPIL_EDGE"
GATEWAY_FAIL = "GATEWAY_FAIL"

# Calibration rejections: the same image fails the same way on every retry
QUALITY_CODES = frozenset({LOW_QUALITY, NO_LIMBUS, NO_PUPIL_EDGE})
PERMANENT_CODES = QUALITY_CODES | {PREREQ_FAIL}


class PipelineStageError(Exception):
    """A pipeline stage ended in an unrecoverable error."""

    def __init__(self, stage, code, message, can_retry=False, side=None):
        self.stage = stage
        self.code = code
        self.message = message
        self.can_retry = can_retry
        self.side = side
        super().__init__(self._describe())

    def _describe(self):
        where = f"{self.side} iris, " if self.side else ""
        return f"[{where}{self.stage}] {self.code}: {self.message}"

    @classmethod
    def from_step_error(cls, step_error, side=None):
        detail = step_error.error
        return cls(detail.stage, detail.code, detail.message, detail.can_retry, side=side)

    def to_dict(self):
        return {
            "side": self.side,
            "stage": self.stage,
            "code": self.code,
            "message": self.message,
            "canRetry": self.can_retry,
        }


class CalibrationRejectedError(PipelineStageError):
    """Calibration returned ok=false; the image cannot be analysed."""


class SideAnalysisError(Exception):
    """Raised by report assembly when one side fails and the policy is abort."""

    def __init__(self, side, cause):
        self.side = side
        self.cause = cause
        super().__init__(f"{side} iris analysis failed: {cause}")
