import asyncio
import stat
import sys
import textwrap

import pytest

from lethe_backend.config import Settings

FAKE_LETHE = textwrap.dedent("""\
    #!{python}
    import os, sys, time
    with open(os.environ["FAKE_LETHE_ARGV"], "w") as f:
        f.write("\\n".join(sys.argv[1:]))
    mode = os.environ.get("FAKE_LETHE_MODE", "ok")
    if mode == "hang":
        sys.stdout.write("Stage 1/1: Writing\\n"); sys.stdout.flush()
        time.sleep(60)
    sys.stdout.write("Stage 1/1: Writing zeroes\\n"); sys.stdout.flush()
    time.sleep(0.05)
    sys.stderr.write("retrying block 7\\n"); sys.stderr.flush()
    time.sleep(0.05)
    sys.stdout.write("100/100\\n"); sys.stdout.flush()
    sys.exit(0 if mode == "ok" else 3)
""")


@pytest.fixture(scope='function')
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path / "data"),
        sign_certificates=True,
        enumerate_timeout=2.0,
        stop_grace_seconds=0.5,
        _env_file=None,
    )


@pytest.fixture(scope='function')
def fake_lethe(tmp_path, monkeypatch):
    path = tmp_path / "lethe"
    path.write_text(FAKE_LETHE.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("FAKE_LETHE_ARGV", str(tmp_path / "argv.txt"))
    return str(path)


class FakeProcess:
    """Stand-in for an asyncio subprocess; must be created inside a running loop."""

    def __init__(self):
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode = None
        self.signals = []
        self._code = None
        self._exited = asyncio.Event()

    def out(self, data: bytes):
        self.stdout.feed_data(data)

    def err(self, data: bytes):
        self.stderr.feed_data(data)

    def finish(self, code: int):
        if self._exited.is_set():
            return
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._code = code
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        self.returncode = self._code
        return self._code

    def terminate(self):
        self.signals.append("terminate")
        self.finish(-15)

    def kill(self):
        self.signals.append("kill")
        self.finish(-9)


class FakeSpawner:
    def __init__(self, error=None):
        self.error = error
        self.calls = []
        self.procs = []

    async def __call__(self, argv):
        self.calls.append(argv)
        if self.error:
            raise self.error
        proc = FakeProcess()
        self.procs.append(proc)
        return proc


def read_file(path, mode="rb"):
    with open(path, mode) as f:
        return f.read()


def drain(obs):
    """Pop everything currently queued for an observer without awaiting."""
    out = []
    while True:
        try:
            out.append(obs.queue.get_nowait())
        except asyncio.QueueEmpty:
            return out
