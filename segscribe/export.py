import logging
from pathlib import Path

import aiofiles

from .models import Job


logger = logging.getLogger(__name__)


class TranscriptWriter:
    """Writes each completed job's combined transcript to ``<output_dir>/<job_id>.txt``."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def path_for(self, job_id: str) -> Path:
        return self.output_dir / f"{job_id}.txt"

    async def write(self, job: Job) -> Path | None:
        path = self.path_for(job.id)
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(job.combined_text or "")
        except OSError as e:
            logger.warning("Could not write transcript for job %s: %s", job.id, e)
            return None
        logger.info("Transcript for job %s written to %s", job.id, path)
        return path
