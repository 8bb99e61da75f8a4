"""Grading pipeline failures."""

from grader_pipeline.jobs.errors import PermanentJobError


class StageFailedError(PermanentJobError):
    """A stage exhausted its attempts. Terminal for the whole grading job."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage
        self.message = message


class StageContractError(StageFailedError):
    """A handler returned a result that does not match its stage's shape."""


class GradingCancelledError(StageFailedError):
    pass
