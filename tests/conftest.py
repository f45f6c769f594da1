import os
import tempfile
import threading
import time

import pytest

# server.py reads its environment at import time
_WORKDIR = tempfile.mkdtemp(prefix="printstreamer-tests-")
os.environ["PRINTSTREAMER_WORKDIR"] = _WORKDIR
os.environ["PRINTSTREAMER_CONFIG"] = os.path.join(_WORKDIR, "config.json")
os.environ["PRINTSTREAMER_TIMELAPSE_DIR"] = os.path.join(_WORKDIR, "timelapse")
os.environ["PRINTSTREAMER_AUDIO_DIR"] = os.path.join(_WORKDIR, "audio")
os.environ["PRINTSTREAMER_AUTOSTART"] = "0"
os.environ["PRINTSTREAMER_MDNS_DISABLE"] = "1"
for _var in ("PRINTSTREAMER_API_TOKEN", "PRINTSTREAMER_SOURCE_URL", "PRINTSTREAMER_MOONRAKER_URL",
             "PRINTSTREAMER_RTMP_URL", "PRINTSTREAMER_RTMP_KEY"):
    os.environ.pop(_var, None)

JPEG = b"\xff\xd8\xff\xe0fake-jpeg-body\xff\xd9"


class FakeProc:
    """Stands in for EncoderProcess: yields canned chunks, then exits or blocks until killed."""

    _pids = 4000

    def __init__(self, chunks=(), code=0, block=False, delay=0.0):
        FakeProc._pids += 1
        self.pid = FakeProc._pids
        self.chunks = list(chunks)
        self.code = code
        self.block = block
        self.delay = delay
        self.args = None
        self.killed = threading.Event()
        self.stopped = False
        self._done = threading.Event()

    @property
    def running(self):
        return not self._done.is_set()

    @property
    def returncode(self):
        return self.wait() if self._done.is_set() else None

    def iter_chunks(self, size=16384):
        for chunk in self.chunks:
            if self.killed.is_set():
                break
            if self.delay:
                time.sleep(self.delay)
            yield chunk
        if self.block:
            self.killed.wait(10)
        self._done.set()

    def wait(self, timeout=None):
        self._done.set()
        return -9 if self.killed.is_set() else self.code

    def kill_tree(self):
        self.killed.set()

    def stop(self, grace=5.0):
        self.stopped = True
        self.kill_tree()
        return self.wait()


class Spawner:
    """Callable with EncoderProcess.spawn's signature handing out FakeProcs in order."""

    def __init__(self, procs=(), factory=None):
        self.procs = list(procs)
        self.factory = factory or (lambda: FakeProc(block=True))
        self.calls = []
        self.spawned = []

    def __call__(self, args, name="encoder", stdin=True):
        proc = self.procs.pop(0) if self.procs else self.factory()
        proc.args = list(args)
        self.calls.append(list(args))
        self.spawned.append(proc)
        return proc


def wait_for(predicate, timeout=3.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def spawner():
    return Spawner()


@pytest.fixture
def audio_dir(tmp_path):
    folder = tmp_path / "audio"
    folder.mkdir()
    for name in ("b.mp3", "A.mp3", "c.wav", "notes.txt"):
        (folder / name).write_bytes(b"data")
    (folder / "sub").mkdir()
    (folder / "sub" / "d.mp3").write_bytes(b"data")
    return folder


@pytest.fixture
def fake_encoder():
    """run_encoder replacement that writes the output file and succeeds."""
    calls = []

    def _run(args, name="encoder", timeout=None):
        calls.append(list(args))
        with open(args[-1], "wb") as f:
            f.write(b"mp4")
        return 0

    _run.calls = calls
    return _run


@pytest.fixture
def server_module():
    import server
    return server


@pytest.fixture
def client(server_module):
    return server_module.app.test_client()
