from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake-case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class JobStatus(str, Enum):
    created = "created"
    processing = "processing"
    completed = "completed"


class SegmentStatus(str, Enum):
    pending = "pending"
    uploaded = "uploaded"
    transcribing = "transcribing"
    completed = "completed"
    error = "error"


TERMINAL_SEGMENT_STATES = frozenset({SegmentStatus.completed, SegmentStatus.error})


class TranscriptionStatus(str, Enum):
    processing = "processing"
    completed = "completed"


class Segment(CamelModel):
    index: int
    status: SegmentStatus = SegmentStatus.pending
    task_id: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SEGMENT_STATES


class TranscriptionResult(CamelModel):
    segment_index: int
    task_id: str | None = None
    status: TranscriptionStatus = TranscriptionStatus.processing
    text: str = ""
    language: str | None = None
    confidence: float | None = None


class Job(CamelModel):
    id: str
    filename: str
    status: JobStatus = JobStatus.created
    created_at: datetime
    completed_at: datetime | None = None
    total_segments: int
    segments: list[Segment]
    transcriptions: dict[int, TranscriptionResult] = Field(default_factory=dict)
    completed_count: int = 0
    combined_text: str | None = None

    def terminal_count(self) -> int:
        return sum(1 for segment in self.segments if segment.is_terminal)


class JobSummary(CamelModel):
    id: str
    status: JobStatus
    filename: str
    created_at: datetime
    total_segments: int
    completed_count: int


# === API ===

class JobCreateRequest(CamelModel):
    filename: str = Field(min_length=1, max_length=512)
    segment_count: int = Field(gt=0)


class JobCreated(CamelModel):
    job_id: str
    segment_count: int
    status: JobStatus


class SegmentAccepted(CamelModel):
    success: bool = True
    job_id: str
    segment_index: int
    status: SegmentStatus


class WebhookAck(CamelModel):
    received: bool = True
    resolved: bool = False
    job_id: str | None = None
    segment_index: int | None = None
