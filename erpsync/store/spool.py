"""Disk spool for invoices whose write failed, replayed later."""
import logging
from pathlib import Path
from typing import Iterator
import aiofiles
import orjson
from pydantic import ValidationError

from erpsync.config import SPOOL_DIR
from erpsync.parse.models import ChangeKind, InvoiceAggregate

logger = logging.getLogger(__name__)


class SpoolManager:
    """Manages JSONL spool files, one per sync run."""

    def __init__(self, spool_dir: Path = SPOOL_DIR):
        self.spool_dir = spool_dir
        self.spool_dir.mkdir(parents=True, exist_ok=True)

    def _get_spool_file(self, run_id: str) -> Path:
        """Get spool file path for a run."""
        return self.spool_dir / f"run_{run_id}.jsonl"

    async def write_aggregate(self, aggregate: InvoiceAggregate, kind: ChangeKind, run_id: str) -> None:
        """Append an aggregate to the run's spool file."""
        spool_file = self._get_spool_file(run_id)
        entry = {"kind": kind.value, "aggregate": aggregate.model_dump(mode="json")}
        async with aiofiles.open(spool_file, "ab") as f:
            await f.write(orjson.dumps(entry) + b"\n")

    async def read_run(self, run_id: str) -> list[tuple[InvoiceAggregate, ChangeKind]]:
        """Read all spooled aggregates of a run."""
        spool_file = self._get_spool_file(run_id)
        if not spool_file.exists():
            return []

        entries = []
        async with aiofiles.open(spool_file, "rb") as f:
            async for line in f:
                if not line.strip():
                    continue
                try:
                    entry = orjson.loads(line)
                    entries.append(
                        (InvoiceAggregate.model_validate(entry["aggregate"]), ChangeKind(entry["kind"]))
                    )
                except (orjson.JSONDecodeError, ValidationError, KeyError, ValueError) as e:
                    logger.warning(f"Error reading spool line in {spool_file.name}: {e}")
                    continue

        return entries

    async def discard(self, run_id: str, numbers: set[str]) -> None:
        """Drop entries for invoices that were written after all."""
        entries = await self.read_run(run_id)
        kept = [(aggregate, kind) for aggregate, kind in entries if aggregate.number not in numbers]
        if len(kept) == len(entries):
            return
        await self.delete_run(run_id)
        for aggregate, kind in kept:
            await self.write_aggregate(aggregate, kind, run_id)

    async def delete_run(self, run_id: str) -> None:
        """Delete a spool file after a successful replay."""
        spool_file = self._get_spool_file(run_id)
        if spool_file.exists():
            spool_file.unlink()

    def list_run_ids(self) -> Iterator[str]:
        """Run ids that still have spooled aggregates."""
        for path in sorted(self.spool_dir.glob("run_*.jsonl")):
            yield path.stem[len("run_"):]
