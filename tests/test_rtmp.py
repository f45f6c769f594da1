import time

import pytest

from conftest import FakeProc, Spawner, wait_for
from helpers.errors import EncoderSpawnError, StreamerError
from helpers.rtmp import PublisherState, RtmpPublisher, build_publish_args, rtmp_target


def _args(target):
    return ["ffmpeg", "-i", "http://127.0.0.1:8080/stream/mix", target]


def test_rtmp_target_joins_ingest_and_key():
    assert rtmp_target("rtmp://a.example/live2/", "/abc") == "rtmp://a.example/live2/abc"
    assert rtmp_target("rtmp://a.example/live2", "") == "rtmp://a.example/live2"
    assert rtmp_target("", "abc") == ""


def test_publish_args_copy_video_from_mix():
    args = build_publish_args("rtmp://x/live/k", "mix", "http://l/stream/mix", "http://l/stream/overlay",
                              "http://l/stream/audio")
    assert args[args.index("-i") + 1] == "http://l/stream/mix"
    assert args[args.index("-c:v") + 1] == "copy"
    assert args[args.index("-f", args.index("-c:v")) + 1] == "flv"
    assert args[-1] == "rtmp://x/live/k"


def test_publish_args_direct_encode():
    args = build_publish_args("rtmp://x/live/k", "direct", "http://l/stream/mix", "http://l/stream/overlay",
                              "http://l/stream/audio", fps=25, bitrate_kbps=3000)
    assert "http://l/stream/overlay" in args
    assert "http://l/stream/audio" in args
    assert args[args.index("-c:v") + 1] == "libx264"
    assert args[args.index("-g") + 1] == "50"
    assert args[args.index("-b:v") + 1] == "3000k"

    silent = build_publish_args("rtmp://x/live/k", "direct", "", "http://l/stream/overlay",
                                "http://l/stream/audio", audio_enabled=False)
    assert "http://l/stream/audio" not in silent
    assert any(a.startswith("anullsrc") for a in silent)


def test_backoff_doubles_up_to_cap():
    pub = RtmpPublisher(_args)
    assert [pub.backoff(n) for n in range(1, 8)] == [0.5, 1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_start_requires_url():
    pub = RtmpPublisher(_args)
    with pytest.raises(StreamerError):
        pub.start()
    assert pub.state == PublisherState.IDLE


def test_publish_and_stop(spawner):
    pub = RtmpPublisher(_args, "rtmp://x/live", "secret", spawn=spawner)
    pub.start()
    try:
        assert wait_for(lambda: pub.state == PublisherState.PUBLISHING)
        with pytest.raises(StreamerError):
            pub.start()
        status = pub.status()
        assert status["target"] == "rtmp://x/live/***"
        assert status["encoder_pid"] == spawner.spawned[0].pid
        assert spawner.calls[0][-1] == "rtmp://x/live/secret"
    finally:
        pub.stop()
    assert pub.state == PublisherState.IDLE
    assert spawner.spawned[0].stopped


def test_gives_up_after_max_attempts():
    spawner = Spawner(factory=lambda: FakeProc(code=1))
    pub = RtmpPublisher(_args, "rtmp://x/live", "k", max_attempts=3, spawn=spawner,
                        backoff_initial=0.001, backoff_cap=0.001)
    pub.start()
    assert wait_for(lambda: len(spawner.calls) == 4 and pub.state == PublisherState.IDLE)
    time.sleep(0.05)
    assert len(spawner.calls) == 4
    assert pub.status()["last_error"] == "encoder exited with code 1"


def test_stop_cancels_pending_reconnect():
    spawner = Spawner(factory=lambda: FakeProc(code=1))
    pub = RtmpPublisher(_args, "rtmp://x/live", "k", spawn=spawner, backoff_initial=30)
    pub.start()
    assert wait_for(lambda: pub.state == PublisherState.RECONNECTING)
    began = time.monotonic()
    pub.stop()
    assert time.monotonic() - began < 2
    assert pub.state == PublisherState.IDLE
    assert len(spawner.calls) == 1


def test_spawn_failure_retries_and_recovers():
    procs = []

    def _spawn(args, name="encoder", stdin=True):
        if not procs:
            procs.append(None)
            raise EncoderSpawnError("transient")
        proc = FakeProc(block=True)
        procs.append(proc)
        return proc

    pub = RtmpPublisher(_args, "rtmp://x/live", "k", spawn=_spawn, backoff_initial=0.001)
    pub.start()
    try:
        assert wait_for(lambda: pub.state == PublisherState.PUBLISHING)
        assert pub.status()["attempts"] == 1
    finally:
        pub.stop()
    assert pub.state == PublisherState.IDLE


def test_spawn_failure_gives_up_after_max_attempts():
    calls = []

    def _spawn(args, name="encoder", stdin=True):
        calls.append(args)
        raise EncoderSpawnError("ffmpeg missing")

    pub = RtmpPublisher(_args, "rtmp://x/live", "k", max_attempts=2, spawn=_spawn,
                        backoff_initial=0.001, backoff_cap=0.001)
    pub.start()
    assert wait_for(lambda: len(calls) == 3 and pub.state == PublisherState.IDLE)
    time.sleep(0.05)
    assert len(calls) == 3
    assert pub.status()["last_error"] == "ffmpeg missing"


def test_end_after_song_stops_live_publish_once(spawner):
    pub = RtmpPublisher(_args, "rtmp://x/live", "k", spawn=spawner)
    assert not pub.on_track_finished()
    pub.start()
    try:
        assert wait_for(lambda: pub.state == PublisherState.PUBLISHING)
        assert not pub.on_track_finished()
        pub.set_end_after_song(True)
        assert pub.status()["end_after_song"] is True
        assert pub.on_track_finished()
        assert not pub.end_after_song
        assert wait_for(lambda: pub.state == PublisherState.IDLE)
        assert spawner.spawned[0].stopped
    finally:
        pub.stop()


def test_end_after_song_flag_clears_while_idle():
    pub = RtmpPublisher(_args, "rtmp://x/live", "k")
    pub.set_end_after_song(True)
    assert not pub.on_track_finished()
    assert not pub.end_after_song
