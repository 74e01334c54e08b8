"""Per-stage results for scheduled jobs, folded into a single run status."""
import enum
from dataclasses import dataclass, field
from typing import List


class RunStatus(enum.Enum):
    SUCCESS = "0"
    FAILURE = "1"


class StageOutcome(enum.Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FATAL = "fatal"


@dataclass
class StageResult:
    stage: str
    outcome: StageOutcome = StageOutcome.SUCCESS
    detail: str = ""
    errors: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        """Record a non-fatal error; the stage becomes a partial failure."""
        self.errors.append(message)
        if self.outcome is StageOutcome.SUCCESS:
            self.outcome = StageOutcome.PARTIAL_FAILURE

    def fail(self, message: str) -> None:
        self.errors.append(message)
        self.outcome = StageOutcome.FATAL


@dataclass
class RunReport:
    """Collects stage results for one invocation.

    `failing_stages` names the stages whose partial failures should still
    flip the run status; any fatal stage always does.
    """

    window: int
    stages: List[StageResult] = field(default_factory=list)
    failing_stages: frozenset = frozenset()
    candidates: int = 0
    kept_records: int = 0
    skipped_records: int = 0
    batches: int = 0
    emails_sent: int = 0
    emails_failed: int = 0

    def stage(self, name: str) -> StageResult:
        result = StageResult(stage=name)
        self.stages.append(result)
        return result

    @property
    def fatal(self) -> bool:
        return any(s.outcome is StageOutcome.FATAL for s in self.stages)

    @property
    def status(self) -> RunStatus:
        for s in self.stages:
            if s.outcome is StageOutcome.FATAL:
                return RunStatus.FAILURE
            if s.outcome is StageOutcome.PARTIAL_FAILURE and s.stage in self.failing_stages:
                return RunStatus.FAILURE
        return RunStatus.SUCCESS

    def summary(self) -> str:
        stages = ", ".join(f"{s.stage}={s.outcome.value}" for s in self.stages)
        return (
            f"window={self.window}d candidates={self.candidates} kept={self.kept_records} "
            f"skipped={self.skipped_records} batches={self.batches} sent={self.emails_sent} "
            f"failed={self.emails_failed} status={self.status.name} [{stages}]"
        )
