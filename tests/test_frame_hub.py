import threading

from conftest import FakeProc, Spawner, wait_for
from helpers.compositor import OverlayCompositor
from helpers.frame_hub import FrameHub

FRAME_A = b"\xff\xd8A\xff\xd9"
FRAME_B = b"\xff\xd8B\xff\xd9"


def test_latest_and_wait_frame():
    hub = FrameHub("test")
    assert hub.latest() is None
    assert hub.wait_frame(0.05) is None
    threading.Timer(0.05, hub.publish, args=(FRAME_A,)).start()
    assert hub.wait_frame(2.0) == FRAME_A
    assert hub.latest() == FRAME_A


def test_clients_always_get_the_newest_frame():
    hub = FrameHub("test")
    hub.publish(FRAME_A)
    frames = hub.frames(keepalive=0.05)
    assert next(frames) == FRAME_A
    assert hub.clients == 1
    hub.publish(FRAME_B)
    hub.publish(FRAME_A)
    hub.publish(FRAME_B)
    assert next(frames) == FRAME_B
    frames.close()
    assert hub.clients == 0


def test_close_ends_client_streams():
    hub = FrameHub("test")
    hub.publish(FRAME_A)
    stream = hub.multipart_stream()
    assert next(stream).endswith(FRAME_A + b"\r\n")
    hub.close()
    assert list(stream) == []


def _compositor(tmp_path, spawner, before_start=None):
    return OverlayCompositor("http://127.0.0.1:8080/stream/source", str(tmp_path / "overlay.txt"),
                             {"idle_timeout": 30}, spawn=spawner, before_start=before_start)


def test_compositor_publishes_encoder_frames(tmp_path):
    spawner = Spawner([FakeProc([b"--frame\r\n" + FRAME_A[:3], FRAME_A[3:] + FRAME_B], block=True)])
    started = []
    compositor = _compositor(tmp_path, spawner, before_start=lambda: started.append(True))
    compositor.ensure_running()
    try:
        assert wait_for(lambda: compositor.hub.latest() == FRAME_B)
        compositor.ensure_running()
        assert len(spawner.calls) == 1
        assert started == [True]
        assert compositor.status()["running"]
    finally:
        compositor.stop()
    assert wait_for(lambda: not compositor.running)
    assert spawner.spawned[0].stopped


def test_compositor_restarts_exited_encoder(tmp_path):
    spawner = Spawner([FakeProc([FRAME_A], code=1)])
    compositor = _compositor(tmp_path, spawner)
    compositor.ensure_running()
    try:
        assert wait_for(lambda: len(spawner.calls) == 2, timeout=5)
        assert compositor.restarts == 1
        assert spawner.calls[0] == spawner.calls[1]
    finally:
        compositor.stop()
