import logging
from typing import Protocol

from .correlation import CorrelationTable, segment_label
from .errors import InvalidInput, NotFound, UpstreamFailure
from .events import SEGMENT_ERROR, SEGMENT_TRANSCRIBING, SEGMENT_UPLOADED, Event
from .models import Job, Segment, SegmentStatus
from .store import JobStore


logger = logging.getLogger(__name__)


class TranscriptionProvider(Protocol):
    async def transcribe(self, audio: bytes, mime_type: str, label: str) -> str:
        """Submit audio and return the provider's correlation token.

        Raises UpstreamFailure on any transport or provider error.
        """


class Submitter:
    def __init__(self, store: JobStore, correlation: CorrelationTable, provider: TranscriptionProvider):
        self.store = store
        self.correlation = correlation
        self.provider = provider

    async def accept(self, job_id: str, index: int, audio: bytes) -> Segment:
        """Record an uploaded segment. Only a pending segment can be uploaded."""
        job = self.store.get_job(job_id)
        self._check(job, index, audio)

        def mark_uploaded(job: Job, segment: Segment):
            if segment.status != SegmentStatus.pending:
                raise InvalidInput(f"Segment {index} already {segment.status.value}")
            segment.status = SegmentStatus.uploaded
            return [Event(SEGMENT_UPLOADED, {"segmentIndex": index, "size": len(audio)})]

        update = await self.store.update_segment(job_id, index, mark_uploaded)
        logger.info("Segment %d of job %s uploaded (%d bytes)", index, job_id, len(audio))
        return update.segment

    async def submit(self, job_id: str, index: int, audio: bytes, mime_type: str) -> str | None:
        """Send one segment to the provider.

        Returns the correlation token, or None when the submission failed and
        the segment was moved to its terminal error state instead.
        """
        try:
            job = self.store.get_job(job_id)
        except NotFound:
            raise InvalidInput("Job not found")
        self._check(job, index, audio)

        label = segment_label(job_id, index)
        try:
            token = await self.provider.transcribe(audio, mime_type, label)
        except UpstreamFailure as e:
            logger.warning("Submission of segment %d of job %s failed: %s", index, job_id, e.message)
            await self._fail(job_id, index, e.message)
            return None

        def mark_transcribing(job: Job, segment: Segment):
            self.correlation.record(token, job.id, segment.index)
            segment.task_id = token
            if segment.status not in (SegmentStatus.pending, SegmentStatus.uploaded):
                # The webhook arrived before the provider's response did
                return []
            segment.status = SegmentStatus.transcribing
            return [Event(SEGMENT_TRANSCRIBING, {"segmentIndex": index, "taskId": token})]

        try:
            await self.store.update_segment(job_id, index, mark_transcribing)
        except NotFound:
            logger.warning("Job %s disappeared while segment %d was being submitted", job_id, index)
            return None
        logger.info("Segment %d of job %s submitted, task %s", index, job_id, token)
        return token

    async def submit_uploaded(self, job_id: str, index: int, audio: bytes, mime_type: str) -> str | None:
        """Background submission after ``accept``; a job deleted meanwhile is skipped."""
        try:
            self.store.get_job(job_id)
        except NotFound:
            logger.warning("Job %s deleted before segment %d could be submitted", job_id, index)
            return None
        return await self.submit(job_id, index, audio, mime_type)

    async def _fail(self, job_id: str, index: int, message: str):
        def mark_error(job: Job, segment: Segment):
            if segment.is_terminal:
                return []
            segment.status = SegmentStatus.error
            segment.error = message
            return [Event(SEGMENT_ERROR, {"segmentIndex": index, "error": message})]

        try:
            await self.store.update_segment(job_id, index, mark_error)
        except NotFound:
            logger.warning("Job %s disappeared before segment %d error was recorded", job_id, index)

    @staticmethod
    def _check(job: Job, index: int, audio: bytes):
        if not 0 <= index < job.total_segments:
            raise InvalidInput("Invalid segment index")
        if not audio:
            raise InvalidInput("No audio data received")
