"""Device listing through ``lethe list`` with OS fallbacks.

Order: ``lethe list`` table -> ``lsblk``/``diskutil`` -> id regex scrape of
whatever the primary tool printed. Nothing here raises; failures are collected
into ``EnumerationResult.errors``.
"""
import json
import os
import re
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .logs import structured_log
from .models import Device, StorageType

TITLES = ["Device ID", "Short ID", "Size", "Type", "Label", "Mount Point"]
_SIZE_RE = re.compile(r"^([\d.]+)\s*([KMGTP]?)(i?B)?$", re.IGNORECASE)
_ID_RES = [re.compile(r"/dev/[\w./-]+"), re.compile(r"PhysicalDrive\d+", re.IGNORECASE)]
_DISKUTIL_RE = re.compile(r"^(/dev/disk\d+)")

Runner = Callable[[List[str], float], Tuple[int, str, str]]


def run_tool(cmd: List[str], timeout: float) -> Tuple[int, str, str]:
    p = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    return p.returncode, p.stdout, p.stderr


@dataclass
class EnumerationResult:
    devices: List[Device] = field(default_factory=list)
    source: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None


def parse_size(text: str) -> int:
    m = _SIZE_RE.match(text.strip())
    if not m:
        return 0
    unit = m.group(2).upper()
    # HumanBytes prints binary units, so "GB" and "GiB" are both 1024-based here
    mult = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4, "P": 1024 ** 5}[unit]
    return int(float(m.group(1)) * mult)


def _storage_type(text: str) -> StorageType:
    for t in StorageType:
        if t.value.lower() == text.strip().lower():
            return t
    return StorageType.UNKNOWN


def parse_lethe_table(output: str) -> List[Device]:
    """Parse the column-aligned table printed by ``lethe list``.

    Columns are sliced at the header offsets since sizes contain spaces
    (``500.1 GiB``). Rows indented by two spaces are children of the last
    top-level row.
    """
    lines = output.splitlines()
    header_idx = next((i for i, l in enumerate(lines) if "Device ID" in l), None)
    if header_idx is None:
        return []
    header = lines[header_idx]
    starts = [header.find(t) for t in TITLES]
    if any(s < 0 for s in starts):
        return []
    bounds = list(zip(starts, starts[1:] + [None]))

    roots: List[dict] = []
    for line in lines[header_idx + 1:]:
        if not line.strip() or set(line.strip()) <= set("-=+| "):
            continue
        cols = [line[a:b].strip() if b is not None else line[a:].strip() for a, b in bounds]
        raw_id = line[starts[0]:bounds[0][1]]
        dev_id = cols[0]
        if not dev_id:
            continue
        node = {
            "id": dev_id,
            "size": parse_size(cols[2]),
            "storage_type": _storage_type(cols[3]),
            "label": cols[4] or None,
            "mount_point": cols[5] or None,
            "children": [],
        }
        indent = len(raw_id) - len(raw_id.lstrip(" "))
        if indent >= 2 and roots:
            roots[-1]["children"].append(node)
        else:
            roots.append(node)
    return [Device(**r) for r in roots]


def scrape_device_ids(output: str) -> List[Device]:
    seen, devices = set(), []
    for line in output.splitlines():
        for rx in _ID_RES:
            for m in rx.findall(line):
                if m not in seen:
                    seen.add(m)
                    devices.append(Device(id=m))
    return devices


def _lsblk_node(node: dict) -> Device:
    dev_id = node.get("path") or f"/dev/{node.get('name')}"
    if node.get("type") == "part":
        st = StorageType.PARTITION
    elif node.get("rm") in (True, 1, "1"):
        st = StorageType.REMOVABLE
    elif node.get("type") == "disk":
        st = StorageType.FIXED
    else:
        st = StorageType.UNKNOWN
    return Device(
        id=dev_id,
        size=int(node.get("size") or 0),
        block_size=int(node.get("phy-sec") or node.get("log-sec") or 512),
        storage_type=st,
        mount_point=node.get("mountpoint") or None,
        label=node.get("label") or node.get("partlabel") or None,
        children=[_lsblk_node(c) for c in node.get("children") or [] if isinstance(c, dict)],
    )


def parse_lsblk_json(output: str) -> List[Device]:
    data = json.loads(output)
    if not isinstance(data, dict) or not isinstance(data.get("blockdevices") or [], list):
        raise ValueError("expected an object with a blockdevices list")
    return [_lsblk_node(n) for n in data.get("blockdevices") or []
            if isinstance(n, dict) and (n.get("name") or n.get("path"))]


def parse_diskutil(output: str) -> List[Device]:
    seen, devices = set(), []
    for line in output.splitlines():
        m = _DISKUTIL_RE.match(line.strip())
        if m and m.group(1) not in seen:
            seen.add(m.group(1))
            devices.append(Device(id=m.group(1)))
    return devices


class DeviceEnumerator:
    def __init__(self, lethe_bin: str = "lethe", timeout: float = 10.0, retries: int = 1,
                 runner: Runner = run_tool, platform: Optional[str] = None):
        self.lethe_bin = lethe_bin
        self.timeout = timeout
        self.retries = max(0, retries)
        self.runner = runner
        self.platform = platform or sys.platform

    def _run(self, cmd: List[str]) -> Tuple[Optional[str], Optional[str]]:
        """Run with retries; return ``(stdout, None)`` or ``(raw_stdout, error)``."""
        err, out = None, None
        for attempt in range(self.retries + 1):
            try:
                rc, out, stderr = self.runner(cmd, self.timeout)
            except (OSError, subprocess.SubprocessError) as e:
                err = f"{cmd[0]}: {e}"
                continue
            if rc == 0:
                return out, None
            err = f"{cmd[0]} exited with {rc}: {(stderr or '').strip()[:300]}"
        return out, err

    def _stage(self, name: str, cmd: List[str], parse: Callable[[str], List[Device]],
               result: EnumerationResult) -> Tuple[List[Device], Optional[str]]:
        out, err = self._run(cmd)
        if err:
            result.errors.append(err)
            structured_log("enumerate_stage_failed", stage=name, error=err)
            return [], out
        try:
            devices = parse(out or "")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            result.errors.append(f"{name}: unparseable output ({e})")
            return [], out
        if not devices:
            result.errors.append(f"{name}: no devices in output")
        return devices, out

    def _os_stage(self) -> Optional[Tuple[str, List[str], Callable[[str], List[Device]]]]:
        if self.platform.startswith("linux"):
            return "lsblk", ["lsblk", "-J", "-O", "-b"], parse_lsblk_json
        if self.platform == "darwin":
            return "diskutil", ["diskutil", "list"], parse_diskutil
        return None

    def list(self) -> EnumerationResult:
        result = EnumerationResult()
        devices, raw = self._stage("lethe", [self.lethe_bin, "list"], parse_lethe_table, result)
        if devices:
            result.devices, result.source = devices, "lethe"
            return result

        os_stage = self._os_stage()
        if os_stage:
            name, cmd, parse = os_stage
            devices, _ = self._stage(name, cmd, parse, result)
            if devices:
                result.devices, result.source = devices, name
                return result

        if raw:
            devices = scrape_device_ids(raw)
            if devices:
                result.devices, result.source = devices, "scrape"
                return result
        structured_log("enumerate_failed", errors=result.errors)
        return result


def system_check(lethe_bin: str = "lethe", runner: Runner = run_tool) -> dict:
    available, version, error = False, None, None
    try:
        rc, out, err = runner([lethe_bin, "--version"], 5)
        if rc == 0 and out.strip():
            available, version = True, out.strip()
        else:
            error = err.strip() or "lethe not found"
    except (OSError, subprocess.SubprocessError) as e:
        error = str(e)
    is_root = hasattr(os, "geteuid") and os.geteuid() == 0
    hint = None
    if sys.platform.startswith("linux") and not is_root:
        hint = "For Linux, run server as root or grant udev permissions."
    return {
        "lethe": {"available": available, "version": version, "error": error},
        "permissions": {"isRoot": is_root, "hint": hint},
    }
