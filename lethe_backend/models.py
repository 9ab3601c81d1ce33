import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

_BYTES_RE = re.compile(r"^(\d+) *(([kmgt])b?)?$", re.IGNORECASE)
_UNITS = {"k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}


def parse_bytes(s: str) -> int:
    """Parse ``4096``, ``128k``, ``2M``, ``7gb`` into a byte count."""
    m = _BYTES_RE.match(str(s).strip())
    if not m:
        raise ValueError("Use a number of bytes with optional scale (e.g. 4096, 128k or 2M).")
    unit = (m.group(3) or "").lower()
    return int(m.group(1)) * _UNITS.get(unit, 1)


def parse_block_size(s: str) -> int:
    n = parse_bytes(s)
    if n == 0 or n & (n - 1):
        raise ValueError("Should be a power of two.")
    return n


def _non_negative(value: Any, allow_units: bool) -> int:
    if isinstance(value, bool):
        raise ValueError("expected an integer")
    if isinstance(value, int):
        n = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValueError("expected an integer")
        n = int(value)
    elif isinstance(value, str):
        s = value.strip()
        if re.fullmatch(r"-\d+", s):
            n = int(s)
        elif allow_units:
            n = parse_bytes(s)
        else:
            n = int(s)
    else:
        raise ValueError("expected an integer")
    # negative values are clamped, matching what the UI has always sent
    return max(0, n)


class StorageType(str, Enum):
    FIXED = "Fixed"
    REMOVABLE = "Removable"
    PARTITION = "Partition"
    UNKNOWN = "Unknown"


class Device(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    size: int = 0
    block_size: int = 512
    storage_type: StorageType = StorageType.UNKNOWN
    mount_point: Optional[str] = None
    label: Optional[str] = None
    children: List["Device"] = Field(default_factory=list)


class VerifyMode(str, Enum):
    NO = "no"
    LAST = "last"
    ALL = "all"


class WipeConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    scheme: str
    verify: VerifyMode = VerifyMode.LAST
    blocksize: str = "1048576"
    offset: int = 0
    retries: int = 8

    @field_validator("scheme", mode="before")
    @classmethod
    def _scheme(cls, v: Any, info: ValidationInfo):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("scheme is required")
        v = v.strip()
        allowed = (info.context or {}).get("schemes")
        if allowed and v not in allowed:
            raise ValueError(f"unknown scheme '{v}' (expected one of: {', '.join(allowed)})")
        return v

    @field_validator("verify", mode="before")
    @classmethod
    def _verify(cls, v: Any):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("blocksize", mode="before")
    @classmethod
    def _blocksize(cls, v: Any):
        if v is None or v == "":
            return "1048576"
        return str(parse_block_size(str(v)))

    @field_validator("offset", mode="before")
    @classmethod
    def _offset(cls, v: Any):
        return 0 if v is None or v == "" else _non_negative(v, allow_units=True)

    @field_validator("retries", mode="before")
    @classmethod
    def _retries(cls, v: Any):
        return 8 if v is None or v == "" else _non_negative(v, allow_units=False)

    def to_args(self) -> List[str]:
        return [
            "--scheme", self.scheme,
            "--verify", self.verify.value,
            "--blocksize", self.blocksize,
            "--offset", str(self.offset),
            "--retries", str(self.retries),
        ]

    def to_public(self) -> Dict[str, Any]:
        return {
            "scheme": self.scheme,
            "verify": self.verify.value,
            "blocksize": self.blocksize,
            "offset": self.offset,
            "retries": self.retries,
        }


def build_wipe_config(raw: Any, schemes: Optional[List[str]] = None) -> WipeConfig:
    """Validate an untrusted config body into a ``WipeConfig``."""
    if not isinstance(raw, dict):
        raise ValidationError("config must be an object")
    try:
        return WipeConfig.model_validate(raw, context={"schemes": schemes})
    except PydanticValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors()]
        raise ValidationError("Invalid wipe config", details={"problems": problems})


class JobState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.STOPPED)


class Stage(BaseModel):
    current: int = 1
    total: int = 1
    description: str = "Initializing"


class ByteProgress(BaseModel):
    current: int = 0
    total: int = 0


class ProgressSnapshot(BaseModel):
    stage: Stage = Field(default_factory=Stage)
    bytes: ByteProgress = Field(default_factory=ByteProgress)

    def to_payload(self) -> Dict[str, Any]:
        return {"currentStage": self.stage.model_dump(), "progress": self.bytes.model_dump()}


class Session(BaseModel):
    id: str
    device: str
    config: WipeConfig
    started_at: datetime
    log_path: str
    state: JobState = JobState.STARTING
    progress: ProgressSnapshot = Field(default_factory=ProgressSnapshot)
    content_hash: Optional[str] = None
    json_artifact_path: Optional[str] = None
    pdf_artifact_path: Optional[str] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    artifact_error: Optional[str] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "sessionId": self.id,
            "device": self.device,
            "config": self.config.to_public(),
            "state": self.state.value,
            "started": self.started_at.isoformat(),
            "finished": self.finished_at.isoformat() if self.finished_at else None,
            "exitCode": self.exit_code,
            "error": self.error,
            "contentHash": self.content_hash,
            "artifacts": {
                "log": True,
                "certificateJson": bool(self.json_artifact_path),
                "certificatePdf": bool(self.pdf_artifact_path),
            },
            "artifactError": self.artifact_error,
            **self.progress.to_payload(),
        }


class WipeRequest(BaseModel):
    device: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class StopRequest(BaseModel):
    device: Optional[str] = None
