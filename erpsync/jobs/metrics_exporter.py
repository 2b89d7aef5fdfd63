"""Progress exporter for observability."""
import time
from pathlib import Path
import aiofiles
import orjson

from erpsync.config import METRICS_FILE
from erpsync.parse.models import SyncProgress


class MetricsExporter:
    """Appends every progress snapshot to a JSONL file."""

    def __init__(self, run_id: str, metrics_file: Path = METRICS_FILE):
        self.run_id = run_id
        self.metrics_file = metrics_file

    async def export_progress(self, progress: SyncProgress) -> None:
        """Export one snapshot to the JSONL file."""
        record = {"ts": time.time(), **progress.model_dump(mode="json")}
        record["run_id"] = self.run_id
        async with aiofiles.open(self.metrics_file, "ab") as f:
            await f.write(orjson.dumps(record) + b"\n")
