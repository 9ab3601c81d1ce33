import json
import time

from .config import get_settings


def _jsonl(event: str, **fields):
    path = get_settings().jsonl_path
    if not path:
        return
    try:
        rec = {"ts": time.time(), "event": event}
        rec.update(fields)
        with open(path, "a") as f:
            f.write(json.dumps(rec, default=str) + "\n")
    except OSError as e:
        print(f"[WARN] jsonl write failed: {e}")


def structured_log(event: str, **fields):
    if get_settings().log_json:
        print(json.dumps({"event": event, **fields}, default=str), flush=True)
    else:
        print(f"[{event}] " + " ".join(f"{k}={v}" for k, v in fields.items()), flush=True)
    _jsonl(event, **fields)
