from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Provider
    elevenlabs_api_key: str = ""
    provider_url: str = "https://api.elevenlabs.io/v1/speech-to-text"
    provider_model_id: str = "scribe_v1"
    provider_timeout: float = 30.0
    diarize: bool = True
    timestamp_granularity: str = "word"

    # Webhook
    webhook_secret: str = ""
    public_base_url: str = "http://localhost:5000"

    # Limits
    max_segments: int = 1000
    max_segment_bytes: int = 200 * 1024 * 1024

    # Streaming
    subscriber_queue_size: int = 256
    stream_keepalive: float = 15.0

    # Paths
    output_dir: Path | None = Path("outputs")

    log_level: str = "INFO"

    class Config:
        env_prefix = "SEGSCRIBE_"


settings = Settings()
