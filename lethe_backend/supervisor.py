"""Lifecycle of lethe ``wipe`` subprocesses, one per device.

A job moves ``starting -> running* -> completed|failed|stopped``; once a
terminal state is reached later events for that job only update the session
record, they never produce another status broadcast.
"""
import asyncio
import codecs
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .broadcaster import TelemetryBroadcaster
from .certificates import CertificateGenerator, ContentLog
from .errors import ArtifactError, ConflictError, ExternalToolError, NotFoundError, ValidationError
from .logs import structured_log
from .models import JobState, Session, WipeConfig
from .parser import OutputParser, format_duration
from .registry import SessionRegistry

READ_SIZE = 64 * 1024

# anything with .stdout/.stderr (StreamReader-like), .returncode, wait(), terminate(), kill()
Spawner = Callable[[List[str]], Awaitable[Any]]


async def spawn_process(argv: List[str]):
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


class WipeJob:
    def __init__(self, session_id: str, device: str, config: WipeConfig, started_at: datetime):
        self.session_id = session_id
        self.device = device
        self.config = config
        self.started_at = started_at
        self.parser = OutputParser(started_at=started_at)
        self.state: Optional[JobState] = None
        self.log: Optional[ContentLog] = None
        self.proc = None
        self.task: Optional[asyncio.Task] = None

    @property
    def terminal(self) -> bool:
        return self.state is not None and self.state.terminal


class WipeSupervisor:
    def __init__(self, registry: SessionRegistry, broadcaster: TelemetryBroadcaster,
                 certificates: CertificateGenerator, logs_dir: str, lethe_bin: str = "lethe",
                 spawner: Spawner = spawn_process, stop_grace_seconds: float = 2.0):
        self.registry = registry
        self.broadcaster = broadcaster
        self.certificates = certificates
        self.logs_dir = logs_dir
        self.lethe_bin = lethe_bin
        self.spawner = spawner
        self.stop_grace_seconds = stop_grace_seconds
        self._lock = threading.Lock()
        self._active: Dict[str, WipeJob] = {}
        # spawned and not yet reaped, including jobs already stopped
        self._unreaped: Set[WipeJob] = set()
        self._tasks: Set[asyncio.Task] = set()

    def build_argv(self, device: str, config: WipeConfig) -> List[str]:
        return [self.lethe_bin, "wipe", device, *config.to_args(), "--yes"]

    def is_active(self, device: str) -> bool:
        with self._lock:
            return device in self._active

    def active_devices(self) -> List[str]:
        with self._lock:
            return list(self._active)

    def status(self, device: str) -> Session:
        with self._lock:
            job = self._active.get(device)
        if job is None:
            raise NotFoundError("No active wipe operation found for this device", details={"device": device})
        return self.registry.require(job.session_id)

    async def start(self, device: str, config: WipeConfig) -> str:
        if not device:
            raise ValidationError("Device and config are required")
        started_at = datetime.now(timezone.utc)
        job = WipeJob(str(uuid.uuid4()), device, config, started_at)
        with self._lock:
            if device in self._active:
                raise ConflictError("A wipe operation is already running for this device", details={"device": device})
            self._active[device] = job
        try:
            return await self._launch(job)
        except BaseException:
            self._release(job)
            raise

    async def _launch(self, job: WipeJob) -> str:
        log_path = os.path.join(self.logs_dir, f"{job.session_id}.log")
        self.registry.create(Session(id=job.session_id, device=job.device, config=job.config,
                                     started_at=job.started_at, log_path=log_path))
        self._transition(job, JobState.STARTING, timing={"started": job.started_at.isoformat()})
        try:
            os.makedirs(self.logs_dir, exist_ok=True)
            job.log = ContentLog(log_path)
        except OSError as e:
            self._fail(job, f"Could not open session log: {e}")
            raise ArtifactError(f"Could not open session log: {e}", details={"sessionId": job.session_id})

        argv = self.build_argv(job.device, job.config)
        structured_log("wipe_spawn", session_id=job.session_id, device=job.device, argv=argv)
        try:
            job.proc = await self.spawner(argv)
        except Exception as e:
            job.log.close()
            error = f"Failed to execute lethe: {str(e) or type(e).__name__}"
            self._fail(job, error)
            raise ExternalToolError(error, details={"sessionId": job.session_id})

        self._unreaped.add(job)
        if job.state is JobState.STOPPED:
            # stop() arrived while we were spawning
            self._signal(job, "terminate")
        self._transition(job, JobState.RUNNING, **job.parser.timing_payload())
        task = asyncio.create_task(self._supervise(job))
        job.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job.session_id

    def stop(self, device: str):
        with self._lock:
            job = self._active.pop(device, None)
        if job is None:
            raise NotFoundError("No active wipe operation found for this device", details={"device": device})
        self._signal(job, "terminate")
        self._transition(job, JobState.STOPPED, timing=self._final_timing(job))
        structured_log("wipe_stop", session_id=job.session_id, device=device)

    async def shutdown(self):
        """Terminate every active subprocess; kill any unreaped one still alive after the grace period.

        Jobs stopped earlier through ``stop()`` are no longer active but are
        escalated too if their process ignored the terminate signal.
        """
        devices = self.active_devices()
        for device in devices:
            try:
                self.stop(device)
            except NotFoundError:
                continue
        structured_log("supervisor_shutdown", devices=devices, unreaped=len(self._unreaped))
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            _, still = await asyncio.wait(pending, timeout=self.stop_grace_seconds)
            if still:
                for job in list(self._unreaped):
                    self._signal(job, "kill")
                _, still = await asyncio.wait(still, timeout=self.stop_grace_seconds)
                for t in still:
                    t.cancel()
                await asyncio.gather(*still, return_exceptions=True)

    async def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until every supervised process has been reaped and finalized."""
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return True
        _, still = await asyncio.wait(pending, timeout=timeout)
        return not still

    def _signal(self, job: WipeJob, how: str):
        proc = job.proc
        if proc is None or proc.returncode is not None:
            return
        try:
            getattr(proc, how)()
        except ProcessLookupError:
            pass

    def _release(self, job: WipeJob):
        with self._lock:
            if self._active.get(job.device) is job:
                del self._active[job.device]

    def _transition(self, job: WipeJob, state: JobState, **payload) -> bool:
        if job.terminal:
            return False
        if state is JobState.STARTING and job.state is not None:
            return False
        prev, job.state = job.state, state
        fields: Dict[str, Any] = {"state": state, "progress": job.parser.snapshot}
        if state.terminal:
            fields["finished_at"] = datetime.now(timezone.utc)
        for key in ("exit_code", "error", "content_hash", "json_artifact_path",
                    "pdf_artifact_path", "artifact_error"):
            if key in payload:
                fields[key] = payload.pop(key)
        self.registry.update(job.session_id, **fields)
        body = {"state": state.value, "sessionId": job.session_id, "device": job.device}
        body.update({k: v for k, v in fields.items() if k in ("exit_code", "error")})
        if "exit_code" in body:
            body["exitCode"] = body.pop("exit_code")
        body.update(payload)
        self.broadcaster.status(body)
        if prev is not state:
            structured_log("wipe_state", session_id=job.session_id, device=job.device, state=state.value,
                           error=fields.get("error"))
        return True

    def _fail(self, job: WipeJob, error: str, exit_code: Optional[int] = None):
        self._release(job)
        self._transition(job, JobState.FAILED, error=error, exit_code=exit_code, timing=self._final_timing(job))

    def _final_timing(self, job: WipeJob) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        return {
            "started": job.started_at.isoformat(),
            "completed": now.isoformat(),
            "elapsed": format_duration((now - job.started_at).total_seconds()),
        }

    def _on_output(self, job: WipeJob, text: str):
        self.broadcaster.output(text)
        update = job.parser.feed(text)
        if update is not None:
            self._transition(job, JobState.RUNNING, **update)

    async def _pump(self, job: WipeJob, stream):
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._on_output(job, tail)
                return
            job.log.write(data)
            text = decoder.decode(data)
            if text:
                self._on_output(job, text)

    async def _supervise(self, job: WipeJob):
        code, error = None, None
        try:
            await asyncio.gather(self._pump(job, job.proc.stdout), self._pump(job, job.proc.stderr))
            code = await job.proc.wait()
            self._unreaped.discard(job)
            structured_log("wipe_exit", session_id=job.session_id, exit_code=code,
                           log_bytes=job.log.bytes_written)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = f"Lost track of lethe process: {e}"
            structured_log("wipe_supervise_error", session_id=job.session_id, error=str(e))
            self._signal(job, "terminate")
        finally:
            job.log.close()
            self._release(job)
        await self._finish(job, code, error)

    async def _finish(self, job: WipeJob, code: Optional[int], error: Optional[str]):
        if job.terminal:
            self.registry.update(job.session_id, exit_code=code)
            return
        if error is not None:
            self._fail(job, error)
            return
        if code != 0:
            self._fail(job, f"Process exited with code {code}", exit_code=code)
            return

        finished_at = datetime.now(timezone.utc)
        content_hash = job.log.hexdigest()
        session = self.registry.update(job.session_id, content_hash=content_hash, exit_code=0)
        artifacts: Dict[str, Any] = {"content_hash": content_hash}
        artifact_error = job.log.error
        if artifact_error is None:
            try:
                json_path, pdf_path = await asyncio.to_thread(
                    self.certificates.generate, session, content_hash, finished_at)
                artifacts.update(json_artifact_path=json_path, pdf_artifact_path=pdf_path)
            except ArtifactError as e:
                artifact_error = e.message
        if artifact_error is not None:
            artifacts["artifact_error"] = artifact_error
            structured_log("certificate_failed", session_id=job.session_id, error=artifact_error)
        self._transition(
            job, JobState.COMPLETED,
            exit_code=0,
            contentHash=content_hash,
            certificateError=artifact_error,
            timing=self._final_timing(job),
            **artifacts,
        )
