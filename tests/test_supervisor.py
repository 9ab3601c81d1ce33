import asyncio
import json

import pytest

from conftest import FakeProcess, FakeSpawner, drain, read_file
from lethe_backend.broadcaster import TelemetryBroadcaster
from lethe_backend.certificates import CertificateGenerator, file_sha256, verify_certificate
from lethe_backend.errors import ArtifactError, ConflictError, ExternalToolError, NotFoundError
from lethe_backend.models import JobState, build_wipe_config
from lethe_backend.registry import SessionRegistry
from lethe_backend.supervisor import WipeSupervisor

TERMINAL = {"completed", "failed", "stopped"}
CONFIG = {"scheme": "zero", "verify": "no", "blocksize": "4096", "offset": 0, "retries": 0}


class BrokenCertificates(CertificateGenerator):
    def generate(self, session, content_hash, completed_at):
        raise ArtifactError("Certificate generation failed: disk full")


def make_supervisor(settings, spawner, certificates=None):
    settings.ensure_dirs()
    certificates = certificates or CertificateGenerator(settings.certs_dir, settings.signing_keys_dir)
    return WipeSupervisor(SessionRegistry(), TelemetryBroadcaster(), certificates, settings.logs_dir,
                          lethe_bin="lethe", spawner=spawner, stop_grace_seconds=0.2)


def statuses(messages):
    return [m["payload"] for m in messages if m["type"] == "wipe_status"]


def outputs(messages):
    return "".join(m["payload"] for m in messages if m["type"] == "wipe_output")


def assert_valid_sequence(states):
    assert states[0] == "starting"
    terminal = [s for s in states if s in TERMINAL]
    assert len(terminal) <= 1
    if terminal:
        assert states[-1] == terminal[0]
    assert all(s == "running" for s in states[1:len(states) - len(terminal)])


def run(coro):
    return asyncio.run(coro)


def test_scenario_completes_with_certificate(settings):
    spawner = FakeSpawner()

    async def scenario():
        sup = make_supervisor(settings, spawner)
        obs = sup.broadcaster.subscribe()
        sid = await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        proc = spawner.procs[0]
        proc.out(b"Stage 1/1: Writing\n")
        await asyncio.sleep(0.01)
        proc.out(b"100/100\n")
        proc.finish(0)
        assert await sup.join(timeout=5)
        return sup, sid, drain(obs)

    sup, sid, messages = run(scenario())
    assert spawner.calls[0] == ["lethe", "wipe", "/dev/sdb", "--scheme", "zero", "--verify", "no",
                                "--blocksize", "4096", "--offset", "0", "--retries", "0", "--yes"]
    final = statuses(messages)[-1]
    assert final["state"] == "completed"
    assert final["sessionId"] == sid
    assert final["certificateError"] is None

    session = sup.registry.require(sid)
    assert session.state is JobState.COMPLETED
    digest = file_sha256(session.log_path)
    assert session.content_hash == digest
    cert = json.loads(read_file(session.json_artifact_path, "r"))
    assert cert["logSha256"] == digest
    assert cert["device"] == "/dev/sdb"
    assert verify_certificate(cert)
    assert read_file(session.pdf_artifact_path)[:4] == b"%PDF"
    assert not sup.is_active("/dev/sdb")


def test_duplicate_start_conflicts(settings):
    spawner = FakeSpawner()

    async def scenario():
        sup = make_supervisor(settings, spawner)
        await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        with pytest.raises(ConflictError):
            await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        # a different device is fine
        await sup.start("/dev/sdc", build_wipe_config(CONFIG))
        assert sorted(sup.active_devices()) == ["/dev/sdb", "/dev/sdc"]
        for p in spawner.procs:
            p.finish(0)
        await sup.join(timeout=5)
        # once the first job exited the device can be wiped again
        await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        spawner.procs[-1].finish(0)
        await sup.join(timeout=5)

    run(scenario())
    assert len(spawner.calls) == 3


def test_output_events_reproduce_raw_stream(settings):
    spawner = FakeSpawner()
    chunks = [(b"out", b"Stage 1/2: Writing 0/"), (b"err", b"warn: slow \xc3"), (b"err", b"\xa9 sector\n"),
              (b"out", b"4096\n512/4096\n"), (b"out", b"Stage 2/2 Verifying\n"), (b"out", b"4096/4096 done\n")]

    async def scenario():
        sup = make_supervisor(settings, spawner)
        obs = sup.broadcaster.subscribe()
        sid = await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        proc = spawner.procs[0]
        for stream, data in chunks:
            (proc.out if stream == b"out" else proc.err)(data)
            await asyncio.sleep(0.01)
        proc.finish(0)
        await sup.join(timeout=5)
        return sup.registry.require(sid), drain(obs)

    session, messages = run(scenario())
    raw = read_file(session.log_path)
    assert raw == b"".join(data for _, data in chunks)
    assert outputs(messages) == raw.decode("utf-8")
    assert_valid_sequence([s["state"] for s in statuses(messages)])
    verifying = [s for s in statuses(messages) if s.get("currentStage", {}).get("description") == "Verifying"]
    assert verifying and verifying[0]["currentStage"]["current"] == 2


def test_nonzero_exit_fails_without_certificate(settings):
    spawner = FakeSpawner()

    async def scenario():
        sup = make_supervisor(settings, spawner)
        obs = sup.broadcaster.subscribe()
        sid = await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        spawner.procs[0].err(b"Unknown device /dev/sdb\n")
        spawner.procs[0].finish(1)
        await sup.join(timeout=5)
        return sup.registry.require(sid), drain(obs)

    session, messages = run(scenario())
    final = statuses(messages)[-1]
    assert final["state"] == "failed"
    assert final["exitCode"] == 1
    assert "code 1" in final["error"]
    assert session.content_hash is None
    assert session.json_artifact_path is None


def test_spawn_error_is_reported_and_releases_device(settings):
    spawner = FakeSpawner(error=FileNotFoundError(2, "No such file or directory", "lethe"))

    async def scenario():
        sup = make_supervisor(settings, spawner)
        obs = sup.broadcaster.subscribe()
        with pytest.raises(ExternalToolError):
            await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        return sup, drain(obs)

    sup, messages = run(scenario())
    assert [s["state"] for s in statuses(messages)] == ["starting", "failed"]
    assert "No such file" in statuses(messages)[-1]["error"]
    assert not sup.is_active("/dev/sdb")
    (session,) = sup.registry.all()
    assert session.state is JobState.FAILED


def test_unexpected_spawn_error_still_fails_the_session(settings):
    spawner = FakeSpawner(error=NotImplementedError())

    async def scenario():
        sup = make_supervisor(settings, spawner)
        obs = sup.broadcaster.subscribe()
        with pytest.raises(ExternalToolError) as exc:
            await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        return sup, exc.value, drain(obs)

    sup, err, messages = run(scenario())
    assert [s["state"] for s in statuses(messages)] == ["starting", "failed"]
    assert "NotImplementedError" in err.message
    assert not sup.is_active("/dev/sdb")
    (session,) = sup.registry.all()
    assert session.state is JobState.FAILED
    assert session.error == err.message


def test_stop_terminates_and_ignores_later_exit(settings):
    spawner = FakeSpawner()

    async def scenario():
        sup = make_supervisor(settings, spawner)
        obs = sup.broadcaster.subscribe()
        sid = await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        spawner.procs[0].out(b"Stage 1/1 Writing 10/100\n")
        await asyncio.sleep(0.01)
        sup.stop("/dev/sdb")
        assert not sup.is_active("/dev/sdb")
        await sup.join(timeout=5)
        return sup.registry.require(sid), drain(obs)

    session, messages = run(scenario())
    assert spawner.procs[0].signals == ["terminate"]
    states = [s["state"] for s in statuses(messages)]
    assert_valid_sequence(states)
    assert states[-1] == "stopped"
    assert session.state is JobState.STOPPED
    assert session.exit_code == -15
    assert session.json_artifact_path is None


def test_stop_without_active_job(settings):
    async def scenario():
        sup = make_supervisor(settings, FakeSpawner())
        obs = sup.broadcaster.subscribe()
        with pytest.raises(NotFoundError):
            sup.stop("/dev/sdb")
        return drain(obs)

    assert run(scenario()) == []


def test_certificate_failure_keeps_completed_state(settings):
    spawner = FakeSpawner()

    async def scenario():
        sup = make_supervisor(settings, spawner, certificates=BrokenCertificates(settings.certs_dir))
        obs = sup.broadcaster.subscribe()
        sid = await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        spawner.procs[0].out(b"100/100\n")
        spawner.procs[0].finish(0)
        await sup.join(timeout=5)
        return sup.registry.require(sid), drain(obs)

    session, messages = run(scenario())
    final = statuses(messages)[-1]
    assert final["state"] == "completed"
    assert "disk full" in final["certificateError"]
    assert session.state is JobState.COMPLETED
    assert session.artifact_error and "disk full" in session.artifact_error
    assert session.content_hash == file_sha256(session.log_path)


def test_shutdown_terminates_active_processes(settings):
    spawner = FakeSpawner()

    async def scenario():
        sup = make_supervisor(settings, spawner)
        await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        await sup.start("/dev/sdc", build_wipe_config(CONFIG))
        await sup.shutdown()
        return sup

    sup = run(scenario())
    assert all(p.signals == ["terminate"] for p in spawner.procs)
    assert sup.active_devices() == []
    assert {s.state for s in sup.registry.all()} == {JobState.STOPPED}


def test_status_of_active_device(settings):
    spawner = FakeSpawner()

    async def scenario():
        sup = make_supervisor(settings, spawner)
        sid = await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        spawner.procs[0].out(b"Stage 1/1 Writing 50/100\n")
        await asyncio.sleep(0.01)
        session = sup.status("/dev/sdb")
        spawner.procs[0].finish(0)
        await sup.join(timeout=5)
        with pytest.raises(NotFoundError):
            sup.status("/dev/sdb")
        return sid, session

    sid, session = run(scenario())
    assert session.id == sid
    assert session.state is JobState.RUNNING
    assert session.progress.bytes.current == 50


class StubbornProcess(FakeProcess):
    """Ignores terminate(); only kill() ends it."""

    def terminate(self):
        self.signals.append("terminate")


class StubbornSpawner(FakeSpawner):
    async def __call__(self, argv):
        self.calls.append(argv)
        proc = StubbornProcess()
        self.procs.append(proc)
        return proc


def test_shutdown_kills_stopped_job_that_ignored_terminate(settings):
    spawner = StubbornSpawner()

    async def scenario():
        sup = make_supervisor(settings, spawner)
        sid = await sup.start("/dev/sdb", build_wipe_config(CONFIG))
        sup.stop("/dev/sdb")
        await asyncio.sleep(0.01)
        assert spawner.procs[0].returncode is None
        await sup.shutdown()
        return sup.registry.require(sid)

    session = run(scenario())
    assert spawner.procs[0].signals == ["terminate", "kill"]
    assert spawner.procs[0].returncode == -9
    assert session.state is JobState.STOPPED
    assert session.exit_code == -9
