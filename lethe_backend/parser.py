"""Progress inference from lethe's free-form console output.

The grammar understood here is ``Stage <i>/<n>`` for stage changes and the
first bare ``<done>/<total>`` pair for byte progress. Anything else in a chunk
is ignored; the raw chunk is always forwarded to observers by the caller.
"""
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .models import ByteProgress, ProgressSnapshot, Stage

STAGE_RE = re.compile(r"Stage\s+(\d+)\s*/\s*(\d+)", re.IGNORECASE)
PAIR_RE = re.compile(r"(\d+)\s*/\s*(\d+)")
VERIFY_RE = re.compile(r"verif", re.IGNORECASE)
WRITE_RE = re.compile(r"writ|fill", re.IGNORECASE)

WRITING = "Writing"
VERIFYING = "Verifying"


def format_duration(seconds: float) -> str:
    s = int(seconds)
    m, h = s // 60, s // 3600
    if h > 0:
        return f"{h}h {m % 60}m {s % 60}s"
    if m > 0:
        return f"{m}m {s % 60}s"
    return f"{s}s"


def compute_rates(current: int, total: int, elapsed: float):
    """Return ``(throughput_bytes_s, eta_seconds)``; either may be None."""
    if elapsed <= 0 or not total:
        return None, None
    throughput = current / elapsed
    if throughput <= 0:
        return throughput, None
    return throughput, max(total - current, 0) / throughput


class OutputParser:
    def __init__(self, started_at: Optional[datetime] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.started_at = started_at or datetime.now(timezone.utc)
        self._clock = clock
        self._t0 = clock()
        self.snapshot = ProgressSnapshot()

    def elapsed(self) -> float:
        return self._clock() - self._t0

    def feed(self, chunk: str) -> Optional[Dict[str, Any]]:
        """Scan one chunk; return a status payload if anything changed."""
        updated = False
        stage = self.snapshot.stage
        progress = self.snapshot.bytes

        m = STAGE_RE.search(chunk)
        if m:
            cur, tot = int(m.group(1)), int(m.group(2))
            if VERIFY_RE.search(chunk):
                desc = VERIFYING
            elif WRITE_RE.search(chunk) or stage.description not in (WRITING, VERIFYING):
                desc = WRITING
            else:
                desc = stage.description
            if (cur, tot) != (stage.current, stage.total):
                progress = ByteProgress(current=0, total=progress.total)
            stage = Stage(current=cur, total=tot, description=desc)
            updated = True

        # stage markers are themselves i/n pairs; keep them out of the byte scan
        rest = STAGE_RE.sub(" ", chunk)
        p = PAIR_RE.search(rest)
        if p:
            done, total = int(p.group(1)), int(p.group(2))
            # only a stage change may move bytes.current backwards
            progress = ByteProgress(current=max(done, progress.current), total=total)
            updated = True

        if not updated:
            return None
        self.snapshot = ProgressSnapshot(stage=stage, bytes=progress)
        return self.timing_payload()

    def timing_payload(self) -> Dict[str, Any]:
        elapsed = self.elapsed()
        cur, tot = self.snapshot.bytes.current, self.snapshot.bytes.total
        throughput, eta = compute_rates(cur, tot, elapsed)
        timing = {
            "started": self.started_at.isoformat(),
            "elapsed": format_duration(elapsed),
            "elapsedSeconds": elapsed,
            "throughputBytesPerSec": throughput,
            "throughputMBps": round(throughput / (1024 * 1024), 2) if throughput is not None else None,
            "etaSeconds": eta,
            "eta": format_duration(eta) if eta is not None else None,
        }
        return {**self.snapshot.to_payload(), "timing": timing}
