"""Inbound provider callbacks.

The provider has shipped several payload shapes over time. Each shape is
a pydantic model able to turn itself into a ``CallbackResult``; the
first model that validates wins.
"""
import hashlib
import hmac
import json
import logging

from pydantic import BaseModel, Field, ValidationError

from .correlation import CorrelationTable, SegmentRef
from .errors import BadRequest, NotFound, Unauthorized, Unresolvable
from .events import SEGMENT_COMPLETED, SEGMENT_ERROR, Event
from .models import (
    CamelModel,
    Job,
    Segment,
    SegmentStatus,
    TranscriptionResult,
    TranscriptionStatus,
    WebhookAck,
)
from .store import JobStore


logger = logging.getLogger(__name__)

COMPLETED_STATUSES = {"completed", "done"}
FAILED_STATUSES = {"error", "failed"}


def sign_payload(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def verify_signature(raw: bytes, header: str | None, secret: str) -> bool:
    """Check a header like ``t=1700000000,v0=<hex>`` against the raw body.

    Only the last comma-separated part carries the digest.
    """
    if not header:
        return False
    digest = header.split(",")[-1].strip()
    if "=" in digest:
        digest = digest.split("=", 1)[1]
    expected = sign_payload(raw, secret)
    return hmac.compare_digest(digest.lower().encode(), expected.encode())


class CallbackResult(BaseModel):
    token: str | None = None
    label: str | None = None
    job_id: str | None = None
    segment_index: int | None = None
    text: str = ""
    language: str | None = None
    confidence: float | None = None
    failed: bool = False
    pending: bool = False
    error: str | None = None


def _first(data: dict, *keys):
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


class EnvelopePayload(BaseModel):
    """``{"type": "speech_to_text", "data": {...}, "webhook_metadata": ...}``"""

    type: str
    data: dict
    webhook_metadata: dict | str | None = None

    def to_result(self) -> CallbackResult:
        metadata = self.webhook_metadata
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = {"request_id": metadata}
        if not isinstance(metadata, dict):
            metadata = {}
        # Some deliveries nest the metadata inside data
        nested = self.data.get("webhook_metadata")
        if isinstance(nested, dict):
            metadata = {**nested, **metadata}

        transcript = _first(self.data, "transcript", "transcription", "text")
        if isinstance(transcript, dict):
            transcript = transcript.get("text")
        return CallbackResult(
            token=_first(metadata, "request_id") or _first(self.data, "request_id", "task_id", "transcription_id"),
            label=_first(metadata, "filename"),
            text=transcript or "",
            language=_first(self.data, "language", "language_code"),
            confidence=_first(self.data, "language_confidence", "language_probability"),
        )


class LegacyPayload(BaseModel):
    """``{"request_id": ..., "text": ..., "language_code": ..., "language_probability": ...}``"""

    request_id: str
    text: str | None = None
    language_code: str | None = None
    language_probability: float | None = None

    def to_result(self) -> CallbackResult:
        return CallbackResult(
            token=self.request_id,
            label=self.request_id,
            text=self.text or "",
            language=self.language_code,
            confidence=self.language_probability,
        )


class GenericPayload(CamelModel):
    """``{"jobId": ..., "segmentIndex": ..., "status": ..., "text": ...}``"""

    job_id: str = Field(min_length=1)
    segment_index: int
    status: str = "completed"
    text: str | None = None
    error: str | None = None
    language: str | None = None
    confidence: float | None = None

    def to_result(self) -> CallbackResult:
        status = self.status.lower()
        failed = status in FAILED_STATUSES
        return CallbackResult(
            job_id=self.job_id,
            segment_index=self.segment_index,
            text=self.text or "",
            language=self.language,
            confidence=self.confidence,
            failed=failed,
            pending=not failed and status not in COMPLETED_STATUSES,
            error=(self.error or "Transcription failed") if failed else None,
        )


PAYLOAD_PARSERS = (EnvelopePayload, LegacyPayload, GenericPayload)


def parse_callback(raw: bytes) -> CallbackResult:
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        raise BadRequest("Invalid JSON")
    if not isinstance(payload, dict):
        raise BadRequest("Unrecognized webhook payload")

    for parser in PAYLOAD_PARSERS:
        try:
            return parser.model_validate(payload).to_result()
        except ValidationError:
            continue
    raise BadRequest("Unrecognized webhook payload")


class WebhookHandler:
    def __init__(self, store: JobStore, correlation: CorrelationTable, secret: str):
        self.store = store
        self.correlation = correlation
        self._secret = secret

    async def handle(self, raw: bytes, signature: str | None) -> WebhookAck:
        if not self._secret:
            logger.warning("Rejected webhook: no webhook secret configured")
            raise Unauthorized()
        if not verify_signature(raw, signature, self._secret):
            logger.warning("Rejected webhook: %s signature", "bad" if signature else "missing")
            raise Unauthorized()

        result = parse_callback(raw)

        try:
            ref = self._correlate(result)
        except Unresolvable as e:
            logger.warning("Acknowledging unresolvable webhook: %s", e.message)
            return WebhookAck()

        try:
            update = await self.store.update_segment(ref.job_id, ref.segment_index, self._apply(result))
        except NotFound as e:
            logger.warning(
                "Acknowledging webhook for unknown job %s segment %d: %s",
                ref.job_id, ref.segment_index, e.message,
            )
            return WebhookAck()

        logger.info(
            "Webhook applied to job %s segment %d (%s): %r",
            ref.job_id, ref.segment_index, update.segment.status.value, result.text[:100],
        )
        return WebhookAck(resolved=True, job_id=ref.job_id, segment_index=ref.segment_index)

    def _correlate(self, result: CallbackResult) -> SegmentRef:
        if result.job_id is not None and result.segment_index is not None:
            return SegmentRef(result.job_id, result.segment_index)
        ref = self.correlation.lookup(result.token, result.label)
        if ref is None:
            raise Unresolvable(f"no job for token {result.token!r} / label {result.label!r}")
        return ref

    @staticmethod
    def _apply(result: CallbackResult):
        def apply(job: Job, segment: Segment):
            index = segment.index
            if segment.status == SegmentStatus.error:
                logger.warning("Ignoring result for failed segment %d of job %s", index, job.id)
                return []

            if result.pending:
                # Still in progress upstream; the segment stays non-terminal
                if not segment.is_terminal and index not in job.transcriptions:
                    job.transcriptions[index] = TranscriptionResult(
                        segment_index=index,
                        task_id=segment.task_id,
                    )
                return []

            if result.failed:
                if segment.status == SegmentStatus.completed:
                    return []
                segment.status = SegmentStatus.error
                segment.error = result.error
                return [Event(SEGMENT_ERROR, {"segmentIndex": index, "error": result.error})]

            entry = job.transcriptions.get(index)
            if entry is None:
                entry = TranscriptionResult(
                    segment_index=index,
                    task_id=result.token or result.label or segment.task_id,
                )
                job.transcriptions[index] = entry
            entry.status = TranscriptionStatus.completed
            entry.text = result.text
            entry.language = result.language
            entry.confidence = result.confidence

            segment.status = SegmentStatus.completed
            if segment.task_id is None:
                segment.task_id = entry.task_id
            return [Event(SEGMENT_COMPLETED, {
                "segmentIndex": index,
                "taskId": entry.task_id,
                "text": entry.text,
                "language": entry.language,
                "confidence": entry.confidence,
            })]

        return apply
