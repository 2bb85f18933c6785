import logging

from .config import Settings
from .correlation import CorrelationTable
from .errors import JobNotReady
from .events import Subscription, SubscriberRegistry
from .export import TranscriptWriter
from .models import Job, JobStatus, JobSummary, Segment, WebhookAck
from .provider import ElevenLabsClient
from .store import JobStore
from .submission import Submitter, TranscriptionProvider
from .webhooks import WebhookHandler


logger = logging.getLogger(__name__)


class Orchestrator:
    """Owns one isolated set of stores and the components wired over them."""

    def __init__(self, settings: Settings, provider: TranscriptionProvider | None = None):
        self.settings = settings
        self.registry = SubscriberRegistry(queue_size=settings.subscriber_queue_size)
        self.correlation = CorrelationTable()
        writer = TranscriptWriter(settings.output_dir) if settings.output_dir else None
        self.store = JobStore(self.registry, writer=writer, max_segments=settings.max_segments)
        self.provider = provider or ElevenLabsClient(settings)
        self.submitter = Submitter(self.store, self.correlation, self.provider)
        self.webhooks = WebhookHandler(self.store, self.correlation, settings.webhook_secret)

    def create_job(self, filename: str, segment_count: int) -> Job:
        return self.store.create_job(filename, segment_count)

    def get_job(self, job_id: str) -> Job:
        return self.store.get_job(job_id)

    def list_jobs(self) -> list[JobSummary]:
        return self.store.list_jobs()

    def delete_job(self, job_id: str) -> Job:
        job = self.store.delete_job(job_id)
        evicted = self.correlation.evict_job(job_id)
        logger.debug("Evicted %d correlation entries of job %s", evicted, job_id)
        return job

    def transcript(self, job_id: str) -> str:
        job = self.store.get_job(job_id)
        if job.status != JobStatus.completed:
            raise JobNotReady("Job not completed")
        return job.combined_text or ""

    async def subscribe(self, job_id: str) -> Subscription:
        """Register a subscriber whose first event is the current snapshot.

        Snapshot and registration happen under the job lock so no mutation
        can slip between them.
        """
        async with self.store.lock(job_id):
            job = self.store.get_job(job_id)
            subscription = self.registry.subscribe(job_id, job.to_payload())
            if job.status == JobStatus.completed:
                subscription.close()
        return subscription

    async def accept_segment(self, job_id: str, index: int, audio: bytes) -> Segment:
        return await self.submitter.accept(job_id, index, audio)

    async def submit_segment(self, job_id: str, index: int, audio: bytes, mime_type: str) -> str | None:
        return await self.submitter.submit(job_id, index, audio, mime_type)

    async def submit_uploaded_segment(self, job_id: str, index: int, audio: bytes, mime_type: str) -> str | None:
        return await self.submitter.submit_uploaded(job_id, index, audio, mime_type)

    async def handle_webhook(self, raw: bytes, signature: str | None) -> WebhookAck:
        return await self.webhooks.handle(raw, signature)
