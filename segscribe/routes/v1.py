import asyncio

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import PlainTextResponse, StreamingResponse

from ..errors import PayloadTooLarge
from ..events import Subscription
from ..models import Job, JobCreated, JobCreateRequest, JobSummary, SegmentAccepted, WebhookAck
from ..orchestrator import Orchestrator


router = APIRouter(prefix="/v1", tags=["v1"])

SIGNATURE_HEADERS = ("elevenlabs-signature", "x-elevenlabs-signature")
DEFAULT_AUDIO_TYPE = "audio/wav"


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


@router.post("/jobs", response_model=JobCreated, status_code=201)
async def create_job(body: JobCreateRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    job = orchestrator.create_job(body.filename, body.segment_count)
    return JobCreated(job_id=job.id, segment_count=job.total_segments, status=job.status)


@router.get("/jobs", response_model=list[JobSummary])
async def list_jobs(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.list_jobs()


@router.get("/jobs/{job_id}", response_model=Job)
async def get_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.get_job(job_id)


@router.delete("/jobs/{job_id}")
async def delete_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    orchestrator.delete_job(job_id)
    return {"status": "deleted"}


@router.get("/jobs/{job_id}/transcript", response_class=PlainTextResponse)
async def get_transcript(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.transcript(job_id)


@router.get("/jobs/{job_id}/stream")
async def stream_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """SSE endpoint for one job's events; the first event is a snapshot."""
    subscription = await orchestrator.subscribe(job_id)
    keepalive = orchestrator.settings.stream_keepalive

    return StreamingResponse(
        event_generator(subscription, keepalive),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    )


async def event_generator(subscription: Subscription, keepalive: float):
    try:
        while True:
            try:
                event = await asyncio.wait_for(subscription.next_event(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            if event is None:
                break
            yield event.encode()
    finally:
        subscription.close()


@router.post("/jobs/{job_id}/segments/{segment_index}", response_model=SegmentAccepted, status_code=202)
async def upload_segment(
    job_id: str,
    segment_index: int,
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    audio = await read_limited(request, orchestrator.settings.max_segment_bytes)
    mime_type = request.headers.get("content-type") or DEFAULT_AUDIO_TYPE

    segment = await orchestrator.accept_segment(job_id, segment_index, audio)

    # Provider submission runs after the response has been sent
    background_tasks.add_task(orchestrator.submit_uploaded_segment, job_id, segment_index, audio, mime_type)
    return SegmentAccepted(job_id=job_id, segment_index=segment_index, status=segment.status)


async def read_limited(request: Request, limit: int) -> bytes:
    """Read the body, stopping as soon as it exceeds ``limit`` bytes."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLarge("Segment exceeds maximum size")

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise PayloadTooLarge("Segment exceeds maximum size")
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/webhooks/elevenlabs", response_model=WebhookAck)
async def elevenlabs_webhook(request: Request, orchestrator: Orchestrator = Depends(get_orchestrator)):
    raw = await request.body()
    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None)
    return await orchestrator.handle_webhook(raw, signature)
