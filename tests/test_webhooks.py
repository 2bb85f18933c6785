import asyncio
import json

import pytest

from segscribe.config import Settings
from segscribe.correlation import segment_label
from segscribe.errors import BadRequest, Unauthorized
from segscribe.events import JOB_COMPLETED, SEGMENT_COMPLETED, SEGMENT_ERROR
from segscribe.models import JobStatus, SegmentStatus, TranscriptionStatus
from segscribe.orchestrator import Orchestrator
from segscribe.webhooks import parse_callback, sign_payload, verify_signature

from conftest import WEBHOOK_SECRET, signed_headers


def _body(payload) -> bytes:
    return json.dumps(payload).encode()


def _signature(body: bytes) -> str:
    return signed_headers(body)["ElevenLabs-Signature"]


def _envelope(token, text, language="en"):
    return {
        "type": "speech_to_text",
        "data": {"transcript": text, "language": language, "language_confidence": 0.98},
        "webhook_metadata": {"request_id": token},
    }


def _legacy(token, text):
    return {"request_id": token, "text": text, "language_code": "en", "language_probability": 0.9}


# === Signature ===

def test_verify_signature_accepts_hmac_of_raw_body():
    raw = b'{"request_id": "x",   "text": "spacing matters"}'
    digest = sign_payload(raw, "secret")
    assert verify_signature(raw, digest, "secret")
    assert verify_signature(raw, f"v0={digest}", "secret")
    assert verify_signature(raw, f"t=1700000000,v0={digest}", "secret")
    assert verify_signature(raw, digest.upper(), "secret")


def test_verify_signature_rejects_mismatch():
    raw = b'{"request_id": "x"}'
    digest = sign_payload(raw, "secret")
    assert not verify_signature(raw, None, "secret")
    assert not verify_signature(raw, "", "secret")
    assert not verify_signature(raw, sign_payload(raw, "other"), "secret")
    # Re-serialized JSON is not the signed body
    assert not verify_signature(json.dumps(json.loads(raw)).replace(" ", "").encode(), digest, "secret")
    assert not verify_signature(raw, "t=1,v0=ünïcode", "secret")


# === Payload shapes ===

def test_parse_envelope_payload():
    result = parse_callback(_body(_envelope("task-1", "hello")))
    assert result.token == "task-1"
    assert result.text == "hello"
    assert result.language == "en"
    assert result.confidence == 0.98


def test_parse_envelope_with_string_metadata_and_filename():
    label = segment_label("job-a", 3)
    payload = {
        "type": "speech_to_text",
        "data": {"transcription": {"text": "nested"}, "language_code": "de"},
        "webhook_metadata": json.dumps({"filename": label}),
    }
    result = parse_callback(_body(payload))
    assert result.label == label
    assert result.text == "nested"
    assert result.language == "de"


def test_parse_legacy_payload():
    result = parse_callback(_body(_legacy("task-2", "legacy")))
    assert result.token == "task-2"
    assert result.text == "legacy"
    assert result.confidence == 0.9


def test_parse_generic_payload():
    result = parse_callback(_body({"jobId": "job-a", "segmentIndex": 4, "status": "completed", "text": "g"}))
    assert (result.job_id, result.segment_index, result.text, result.failed) == ("job-a", 4, "g", False)

    failed = parse_callback(_body({"jobId": "job-a", "segmentIndex": 1, "status": "failed"}))
    assert failed.failed
    assert failed.error == "Transcription failed"


@pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b'"text"', b'{"unexpected": true}', b"\xff\xfe"])
def test_parse_rejects_unrecognized_bodies(raw):
    with pytest.raises(BadRequest):
        parse_callback(raw)


# === Handler ===

def _uploaded_job(orchestrator, count=2):
    job = orchestrator.create_job("a.wav", count)

    async def upload():
        for i in range(count):
            await orchestrator.accept_segment(job.id, i, b"audio")
            await orchestrator.submit_segment(job.id, i, b"audio", "audio/wav")

    asyncio.run(upload())
    return orchestrator.get_job(job.id)


def _deliver(orchestrator, payload):
    body = _body(payload)
    return asyncio.run(orchestrator.handle_webhook(body, _signature(body)))


def test_out_of_order_webhooks_assemble_in_segment_order(orchestrator, recorder):
    job = _uploaded_job(orchestrator)
    tokens = [s.task_id for s in job.segments]

    first = _deliver(orchestrator, _envelope(tokens[1], "world"))
    assert orchestrator.get_job(job.id).status == JobStatus.processing
    second = _deliver(orchestrator, _legacy(tokens[0], "hello"))

    assert first.resolved and second.resolved
    final = orchestrator.get_job(job.id)
    assert final.status == JobStatus.completed
    assert final.combined_text == "hello\n\nworld"
    assert final.completed_at is not None
    assert all(s.status == SegmentStatus.completed for s in final.segments)
    assert final.transcriptions[1].task_id == tokens[1]
    assert recorder.names(job.id).count(JOB_COMPLETED) == 1


def test_redelivered_webhook_is_idempotent(orchestrator, recorder):
    job = _uploaded_job(orchestrator, count=1)
    body = _body(_envelope(job.segments[0].task_id, "only once"))
    signature = _signature(body)

    asyncio.run(orchestrator.handle_webhook(body, signature))
    after_first = orchestrator.get_job(job.id)
    ack = asyncio.run(orchestrator.handle_webhook(body, signature))
    after_second = orchestrator.get_job(job.id)

    assert ack.resolved
    assert after_second == after_first
    assert after_second.combined_text == "only once"
    assert len(after_second.transcriptions) == 1
    assert recorder.names(job.id).count(JOB_COMPLETED) == 1


def test_unrecorded_token_falls_back_to_label(orchestrator):
    job = orchestrator.create_job("a.wav", 3)
    label = segment_label(job.id, 2)

    ack = _deliver(orchestrator, _legacy(label, "from label"))

    assert ack.resolved
    assert ack.segment_index == 2
    updated = orchestrator.get_job(job.id)
    assert updated.segments[2].status == SegmentStatus.completed
    assert updated.transcriptions[2].text == "from label"


def test_envelope_filename_metadata_resolves(orchestrator):
    job = orchestrator.create_job("a.wav", 1)
    payload = {
        "type": "speech_to_text",
        "data": {"transcript": "via filename"},
        "webhook_metadata": {"request_id": "never-recorded", "filename": segment_label(job.id, 0)},
    }

    assert _deliver(orchestrator, payload).resolved
    assert orchestrator.get_job(job.id).combined_text == "via filename"


@pytest.mark.parametrize("payload", [
    _legacy("unknown-token", "lost"),
    _legacy(segment_label("no-such-job", 0), "lost"),
    {"jobId": "no-such-job", "segmentIndex": 0, "text": "lost"},
])
def test_unresolvable_webhook_is_acknowledged(orchestrator, recorder, payload):
    job = orchestrator.create_job("a.wav", 1)

    ack = _deliver(orchestrator, payload)

    assert ack.received
    assert not ack.resolved
    assert orchestrator.get_job(job.id).segments[0].status == SegmentStatus.pending


def test_out_of_range_segment_is_acknowledged(orchestrator):
    job = orchestrator.create_job("a.wav", 1)
    ack = _deliver(orchestrator, {"jobId": job.id, "segmentIndex": 5, "text": "x"})
    assert not ack.resolved


@pytest.mark.parametrize("signature", [None, "", "t=1,v0=deadbeef", "garbage"])
def test_bad_signature_is_rejected_without_side_effects(orchestrator, recorder, signature):
    job = _uploaded_job(orchestrator, count=1)
    before = orchestrator.get_job(job.id)
    emitted = len(recorder.events)
    body = _body(_envelope(job.segments[0].task_id, "forged"))

    with pytest.raises(Unauthorized) as exc:
        asyncio.run(orchestrator.handle_webhook(body, signature))

    assert exc.value.message == "Invalid signature"
    assert orchestrator.get_job(job.id) == before
    assert len(recorder.events) == emitted


def test_signature_checked_before_parsing(orchestrator):
    with pytest.raises(Unauthorized):
        asyncio.run(orchestrator.handle_webhook(b"not json", "v0=00"))
    with pytest.raises(BadRequest):
        asyncio.run(orchestrator.handle_webhook(b"not json", sign_payload(b"not json", WEBHOOK_SECRET)))


def test_generic_failure_marks_segment_error(orchestrator, recorder):
    job = orchestrator.create_job("a.wav", 2)

    _deliver(orchestrator, {"jobId": job.id, "segmentIndex": 0, "status": "error", "error": "decode failed"})
    _deliver(orchestrator, {"jobId": job.id, "segmentIndex": 1, "text": "kept"})

    final = orchestrator.get_job(job.id)
    assert final.segments[0].status == SegmentStatus.error
    assert final.segments[0].error == "decode failed"
    assert final.status == JobStatus.completed
    assert final.combined_text == "kept"
    names = recorder.names(job.id)
    assert SEGMENT_ERROR in names
    assert names.index(SEGMENT_COMPLETED) < names.index(JOB_COMPLETED)


def test_result_for_errored_segment_is_ignored(orchestrator, provider):
    provider.failing_segments = {0}
    job = _uploaded_job(orchestrator, count=2)

    _deliver(orchestrator, _legacy(segment_label(job.id, 0), "too late"))

    current = orchestrator.get_job(job.id)
    assert current.segments[0].status == SegmentStatus.error
    assert 0 not in current.transcriptions


@pytest.mark.parametrize("status", ["processing", "queued", "PROCESSING"])
def test_non_final_generic_status_leaves_segment_open(orchestrator, recorder, status):
    job = _uploaded_job(orchestrator, count=1)

    ack = _deliver(orchestrator, {"jobId": job.id, "segmentIndex": 0, "status": status})

    assert ack.resolved
    current = orchestrator.get_job(job.id)
    assert current.segments[0].status == SegmentStatus.transcribing
    assert current.status == JobStatus.processing
    assert current.combined_text is None
    assert current.transcriptions[0].status == TranscriptionStatus.processing
    assert JOB_COMPLETED not in recorder.names(job.id)

    _deliver(orchestrator, {"jobId": job.id, "segmentIndex": 0, "status": "completed", "text": "final"})

    final = orchestrator.get_job(job.id)
    assert final.status == JobStatus.completed
    assert final.combined_text == "final"
    assert final.transcriptions[0].status == TranscriptionStatus.completed


def test_parse_generic_statuses():
    def parse(status):
        return parse_callback(_body({"jobId": "job-a", "segmentIndex": 0, "status": status}))

    assert not parse("completed").pending
    assert not parse("done").pending
    assert parse("processing").pending
    assert parse("failed").failed and not parse("failed").pending


def test_unset_secret_rejects_every_webhook(tmp_path):
    orchestrator = Orchestrator(Settings(webhook_secret="", output_dir=tmp_path))
    job = orchestrator.create_job("a.wav", 1)
    body = _body({"jobId": job.id, "segmentIndex": 0, "text": "forged"})

    with pytest.raises(Unauthorized):
        asyncio.run(orchestrator.handle_webhook(body, sign_payload(body, "")))

    current = orchestrator.get_job(job.id)
    assert current.segments[0].status == SegmentStatus.pending
    assert current.status == JobStatus.created
