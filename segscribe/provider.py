import json
import logging

import httpx

from .config import Settings
from .errors import UpstreamFailure


logger = logging.getLogger(__name__)


class ElevenLabsClient:
    """One-shot async speech-to-text submission.

    The provider answers immediately with a task identifier and delivers the
    transcript later through the webhook.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    async def transcribe(self, audio: bytes, mime_type: str, label: str) -> str:
        s = self.settings
        data = {
            "model_id": s.provider_model_id,
            "webhook": "true",
            "diarize": "true" if s.diarize else "false",
            "timestamp_granularity": s.timestamp_granularity,
            "webhook_metadata": json.dumps({"request_id": label, "filename": label}),
        }
        files = {"file": (label, audio, mime_type)}
        headers = {"xi-api-key": s.elevenlabs_api_key}

        logger.info("Submitting %s (%d bytes, %s) to %s", label, len(audio), mime_type, s.provider_url)
        try:
            async with httpx.AsyncClient(timeout=s.provider_timeout, transport=self._transport) as client:
                resp = await client.post(s.provider_url, data=data, files=files, headers=headers)
                resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise UpstreamFailure(f"Provider timed out after {s.provider_timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise UpstreamFailure(f"Provider returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Provider unreachable: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        token = body.get("task_id") or body.get("taskId") or body.get("request_id")
        if not token:
            logger.warning("Provider returned no task id for %s, correlating by label", label)
            token = label
        return str(token)
