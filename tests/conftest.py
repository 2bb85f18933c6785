import pytest
from fastapi.testclient import TestClient

from segscribe.config import Settings
from segscribe.correlation import parse_segment_label
from segscribe.errors import UpstreamFailure
from segscribe.main import create_app
from segscribe.orchestrator import Orchestrator
from segscribe.webhooks import sign_payload


WEBHOOK_SECRET = "test-webhook-secret"


class FakeProvider:
    """Stands in for the speech-to-text API; fails for selected segment indexes."""

    def __init__(self):
        self.calls = []
        self.failing_segments = set()

    async def transcribe(self, audio: bytes, mime_type: str, label: str) -> str:
        self.calls.append({"label": label, "mime_type": mime_type, "size": len(audio)})
        ref = parse_segment_label(label)
        if ref is not None and ref.segment_index in self.failing_segments:
            raise UpstreamFailure("Provider returned HTTP 500")
        return f"task-{ref.segment_index}-{len(self.calls)}"


class EventRecorder:
    def __init__(self, registry):
        self.events = []
        self._publish = registry.publish
        registry.publish = self.publish

    def publish(self, job_id, name, payload):
        self.events.append((job_id, name, payload))
        return self._publish(job_id, name, payload)

    def names(self, job_id=None):
        return [name for jid, name, _ in self.events if job_id is None or jid == job_id]


def signed_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> dict:
    return {
        "ElevenLabs-Signature": f"t=1700000000,v0={sign_payload(body, secret)}",
        "Content-Type": "application/json",
    }


@pytest.fixture
def settings(tmp_path):
    return Settings(
        elevenlabs_api_key="test-api-key",
        webhook_secret=WEBHOOK_SECRET,
        public_base_url="http://localhost:5001",
        output_dir=tmp_path / "outputs",
        stream_keepalive=5.0,
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def orchestrator(settings, provider):
    return Orchestrator(settings, provider=provider)


@pytest.fixture
def recorder(orchestrator):
    return EventRecorder(orchestrator.registry)


@pytest.fixture
def app(settings, provider):
    return create_app(settings, provider=provider)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client
