"""In-memory job state.

The store is the single owner of Job and Segment objects. Callers only
ever receive deep copies; every change goes through ``update_segment``,
which serializes mutations per job and publishes the resulting events
while still holding that job's lock, so subscribers observe them in
mutation order.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable

from .errors import InvalidInput, NotFound
from .events import JOB_COMPLETED, JOB_CREATED, JOB_PROGRESS, Event, SubscriberRegistry
from .export import TranscriptWriter
from .models import (
    Job,
    JobStatus,
    JobSummary,
    Segment,
    SegmentStatus,
    TranscriptionResult,
    TranscriptionStatus,
)


logger = logging.getLogger(__name__)

# Receives the live job and segment under the job lock and returns the
# events describing what it changed.
Mutation = Callable[[Job, Segment], Iterable[Event] | None]


@dataclass
class SegmentUpdate:
    job: Job
    segment: Segment
    completed_now: bool


def combine_transcript(transcriptions: Iterable[TranscriptionResult]) -> str:
    ordered = sorted(transcriptions, key=lambda t: t.segment_index)
    texts = [
        t.text for t in ordered
        if t.status == TranscriptionStatus.completed and t.text and t.text.strip()
    ]
    return "\n\n".join(texts)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    def __init__(
        self,
        publisher: SubscriberRegistry,
        writer: TranscriptWriter | None = None,
        max_segments: int = 1000,
    ):
        self._publisher = publisher
        self._writer = writer
        self._max_segments = max_segments
        self._jobs: dict[str, Job] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def create_job(self, filename: str, total_segments: int) -> Job:
        if not filename or not filename.strip():
            raise InvalidInput("filename is required")
        if total_segments <= 0:
            raise InvalidInput("segmentCount must be positive")
        if total_segments > self._max_segments:
            raise InvalidInput(f"segmentCount exceeds limit of {self._max_segments}")

        job_id = str(uuid.uuid4())
        job = Job(
            id=job_id,
            filename=filename,
            created_at=_now(),
            total_segments=total_segments,
            segments=[Segment(index=i) for i in range(total_segments)],
        )
        self._jobs[job_id] = job
        self._locks[job_id] = asyncio.Lock()
        self._publisher.publish(job_id, JOB_CREATED, job.to_payload())
        logger.info("Job %s created for %s with %d segments", job_id, filename, total_segments)
        return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Job:
        return self._require(job_id).model_copy(deep=True)

    def list_jobs(self) -> list[JobSummary]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
        return [
            JobSummary(
                id=job.id,
                status=job.status,
                filename=job.filename,
                created_at=job.created_at,
                total_segments=job.total_segments,
                completed_count=job.completed_count,
            )
            for job in jobs
        ]

    def lock(self, job_id: str) -> asyncio.Lock:
        self._require(job_id)
        return self._locks[job_id]

    def delete_job(self, job_id: str) -> Job:
        job = self._require(job_id)
        del self._jobs[job_id]
        self._locks.pop(job_id, None)
        self._publisher.close_job(job_id)
        logger.info("Job %s deleted", job_id)
        return job

    async def update_segment(self, job_id: str, index: int, mutation: Mutation) -> SegmentUpdate:
        async with self.lock(job_id):
            # The job may have been deleted while we waited for the lock
            job = self._require(job_id)
            if not 0 <= index < job.total_segments:
                raise NotFound(f"Segment {index} not found in job {job_id}")

            events = list(mutation(job, job.segments[index]) or ())
            completed_now = self._recompute(job)

            for event in events:
                self._publisher.publish(job_id, event.name, event.data)
            if events or completed_now:
                self._publisher.publish(job_id, JOB_PROGRESS, self._progress(job))
            if completed_now:
                self._publisher.publish(job_id, JOB_COMPLETED, {
                    "jobId": job.id,
                    "combinedText": job.combined_text,
                    "completedAt": job.completed_at.isoformat(),
                    "completedCount": job.completed_count,
                    "totalSegments": job.total_segments,
                })
                self._publisher.close_job(job_id)
                logger.info(
                    "Job %s completed: %d/%d segments transcribed, %d characters",
                    job_id, job.completed_count, job.total_segments, len(job.combined_text or ""),
                )

            snapshot = job.model_copy(deep=True)

        if completed_now and self._writer is not None:
            await self._writer.write(snapshot)
        return SegmentUpdate(snapshot, snapshot.segments[index], completed_now)

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound("Job not found")
        return job

    def _recompute(self, job: Job) -> bool:
        """Refresh aggregates; return True only on the transition to completed."""
        job.completed_count = sum(1 for s in job.segments if s.status == SegmentStatus.completed)

        if job.status == JobStatus.completed:
            # Redelivered results converge to the same text; never re-announce
            job.combined_text = combine_transcript(job.transcriptions.values())
            return False

        if all(s.is_terminal for s in job.segments):
            job.status = JobStatus.completed
            job.completed_at = _now()
            job.combined_text = combine_transcript(job.transcriptions.values())
            return True

        if any(s.status != SegmentStatus.pending for s in job.segments):
            job.status = JobStatus.processing
        return False

    @staticmethod
    def _progress(job: Job) -> dict:
        terminal = job.terminal_count()
        return {
            "status": job.status.value,
            "completed": job.completed_count,
            "terminal": terminal,
            "total": job.total_segments,
            "progress": round(terminal / job.total_segments * 100, 1),
        }
