from __future__ import annotations
import os, json, asyncio, time
from dataclasses import asdict, replace
from ..ports.storage import ScanJournal
from ..domain.models import ScanRecord

class JSONLScanJournal(ScanJournal):
    """Append-only JSONL record of scan passes (one line per vault range and status)."""

    def __init__(self, path: str) -> None:
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = asyncio.Lock()

    async def append(self, rec: ScanRecord) -> None:
        if not rec.updated_at:
            rec = replace(rec, updated_at=time.time())
        line = json.dumps(asdict(rec), separators=(",", ":")) + "\n"
        async with self._lock:
            with open(self.path, "a") as f:
                f.write(line); f.flush(); os.fsync(f.fileno())

    def read(self) -> list[ScanRecord]:
        if not os.path.exists(self.path):
            return []
        out: list[ScanRecord] = []
        with open(self.path) as f:
            for line in f:
                line = line.strip()
                if line:
                    out.append(ScanRecord(**json.loads(line)))
        return out
