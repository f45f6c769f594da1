import os
import threading
import time

import pytest

from conftest import JPEG, wait_for
from helpers.errors import SessionActive, TimelapseError, TimelapseNotFound
from helpers.timelapse import TimelapseManager, list_frames, parse_metadata, sanitize_name


def _frames(folder, count):
    folder.mkdir(parents=True, exist_ok=True)
    for i in range(count):
        (folder / f"frame_{i:06d}.jpg").write_bytes(str(i).encode())


def _manager(root, run_encoder, **settings):
    settings.setdefault("period_seconds", 3600)
    return TimelapseManager(str(root), settings, capture_fn=lambda: JPEG, run_encoder=run_encoder)


@pytest.mark.parametrize("raw,expected", [
    ("My Print (v2).gcode", "My_Print_v2"),
    ("a&b.gcode", "aandb"),
    ("gcodes/sub/job.gcode", "job"),
    ("weird#name;[x].gcode", "weird_name_x"),
    ("___.gcode", "unknown"),
    ("", "unknown"),
    (None, "unknown"),
])
def test_sanitize_name(raw, expected):
    assert sanitize_name(raw) == expected


def test_parse_metadata_key_styles_and_bare_link():
    meta = parse_metadata(
        "# comment\n"
        "CreatedAt=2024-01-01T00:00:00Z\n"
        "session_name: job\n"
        "https://www.youtube.com/watch?v=abc\n"
        "https://example.com/not-a-video\n"
    )
    assert meta["createdat"] == "2024-01-01T00:00:00Z"
    assert meta["session_name"] == "job"
    assert meta["youtubeurl"] == "https://www.youtube.com/watch?v=abc"
    assert len(meta) == 3


def test_resume_continues_frame_numbering(tmp_path, fake_encoder):
    root = tmp_path / "timelapse"
    _frames(root / "job", 50)
    (root / "job" / ".metadata").write_text("session_name=job\nmoonraker_filename=job.gcode\n")
    mgr = _manager(root, fake_encoder, start_after_layer1=False)
    try:
        assert mgr.start("unused", "job.gcode") == "job"
        assert (root / "job" / "frame_000050.jpg").read_bytes() == JPEG
        assert mgr.get_session("job").frame_count == 51
    finally:
        mgr.stop_scheduler()


def test_resume_waits_for_layer_one_before_numbering_on(tmp_path, fake_encoder):
    root = tmp_path / "timelapse"
    _frames(root / "job", 50)
    (root / "job" / ".metadata").write_text("moonraker_filename=JOB.gcode\n")
    mgr = _manager(root, fake_encoder)
    try:
        assert mgr.start("unused", "job.gcode") == "job"
        assert mgr.capture_tick() == 0
        mgr.notify_print_progress("job", 1, 100)
        assert mgr.capture_tick() == 1
        assert (root / "job" / "frame_000050.jpg").exists()
    finally:
        mgr.stop_scheduler()


def test_folder_without_metadata_resumes_on_exact_name(tmp_path, fake_encoder):
    root = tmp_path / "timelapse"
    _frames(root / "job", 3)
    mgr = _manager(root, fake_encoder)
    try:
        assert mgr.start("job") == "job"
        assert mgr.get_session("job").frame_count == 3
    finally:
        mgr.stop_scheduler()


def test_finished_or_foreign_folders_get_next_suffix(tmp_path, fake_encoder):
    root = tmp_path / "timelapse"
    _frames(root / "job", 2)
    (root / "job" / "job.mp4").write_bytes(b"mp4")
    (root / "job_3").mkdir()
    _frames(root / "other", 2)
    (root / "other" / ".metadata").write_text("moonraker_filename=something-else.gcode\n")
    mgr = _manager(root, fake_encoder)
    try:
        assert mgr.start("job", "job.gcode") == "job_4"
        assert mgr.start("other", "other.gcode") == "other_1"
        meta = mgr.read_metadata("job_4")
        assert meta["sessionName"] == "job_4"
        assert meta["moonrakerFilename"] == "job.gcode"
        assert meta["createdAt"].endswith("Z")
    finally:
        mgr.stop_scheduler()


def test_second_start_on_active_folder_is_refused(tmp_path, fake_encoder):
    mgr = _manager(tmp_path, fake_encoder, start_after_layer1=False)
    try:
        assert mgr.start("job") == "job"
        assert mgr.start("job") is None
        assert mgr.active_names() == ["job"]
    finally:
        mgr.stop_scheduler()


def test_capture_gating(tmp_path, fake_encoder):
    mgr = _manager(tmp_path, fake_encoder)
    try:
        name = mgr.start("gated")
        assert mgr.capture_tick() == 0
        mgr.notify_print_progress(name, 0, 100)
        assert mgr.capture_tick() == 0
        mgr.notify_print_progress(name, 1, 100)
        assert mgr.capture_tick() == 1
        mgr.notify_printer_state(name, "paused")
        assert mgr.get_session(name).is_paused
        assert mgr.capture_tick() == 0
        mgr.notify_printer_state(name, "printing")
        assert mgr.capture_tick() == 1
        assert list_frames(str(tmp_path / name)) == ["frame_000000.jpg", "frame_000001.jpg"]
    finally:
        mgr.stop_scheduler()


def test_capture_failure_writes_nothing(tmp_path, fake_encoder):
    from helpers.errors import CaptureTimeout

    def _fail():
        raise CaptureTimeout("no frame")

    mgr = TimelapseManager(str(tmp_path), {"start_after_layer1": False, "period_seconds": 3600},
                           capture_fn=_fail, run_encoder=fake_encoder)
    try:
        name = mgr.start("flaky")
        assert mgr.capture_tick() == 0
        assert mgr.get_session(name).frame_count == 0
    finally:
        mgr.stop_scheduler()


def test_last_layer_finalizes_and_encodes(tmp_path, fake_encoder):
    mgr = _manager(tmp_path, fake_encoder, start_after_layer1=False)
    name = mgr.start("print", "print.gcode")
    assert name == "print"
    assert mgr.scheduler_running
    assert mgr.notify_print_progress(name, 198, 200) is None
    video = mgr.notify_print_progress(name, 199, 200)
    assert video == os.path.join(str(tmp_path), "print", "print.mp4")
    assert os.path.isfile(video)
    assert not mgr.is_active(name)
    assert not mgr.scheduler_running
    assert mgr.notify_print_progress(name, 200, 200) is None
    args = fake_encoder.calls[0]
    assert "tpad=stop_mode=clone:stop_duration=5" in args
    assert args[args.index("-framerate") + 1] == "30"
    assert args[args.index("-start_number") + 1] == "0"


def test_last_layer_without_auto_finalize_only_stops_capture(tmp_path, fake_encoder):
    mgr = _manager(tmp_path, fake_encoder, start_after_layer1=False, auto_finalize=False)
    try:
        name = mgr.start("print")
        assert mgr.notify_print_progress(name, 10, 10) is None
        session = mgr.get_session(name)
        assert session.is_stopped
        assert mgr.is_active(name)
        assert mgr.capture_tick() == 0
        assert session.write_frame(JPEG) is None
        assert fake_encoder.calls == []
    finally:
        mgr.stop_scheduler()


def test_generate_video_falls_back_to_glob(tmp_path):
    _frames(tmp_path / "done", 3)
    calls = []

    def _run(args, name="encoder", timeout=None):
        calls.append(list(args))
        if len(calls) == 1:
            return 1
        with open(args[-1], "wb") as f:
            f.write(b"mp4")
        return 0

    mgr = _manager(tmp_path, _run)
    video = mgr.generate_video("done")
    assert video.endswith("done.mp4")
    assert len(calls) == 2
    assert "-pattern_type" in calls[1]


def test_generate_video_keeps_frames_when_both_attempts_fail(tmp_path):
    _frames(tmp_path / "done", 3)
    mgr = _manager(tmp_path, lambda args, name="encoder", timeout=None: 1)
    assert mgr.generate_video("done") is None
    assert len(list_frames(str(tmp_path / "done"))) == 3


def test_generate_video_without_frames_skips_encoder(tmp_path, fake_encoder):
    (tmp_path / "empty").mkdir()
    mgr = _manager(tmp_path, fake_encoder)
    assert mgr.generate_video("empty") is None
    assert fake_encoder.calls == []


def test_delete_frame_renumbers_contiguously(tmp_path, fake_encoder):
    _frames(tmp_path / "done", 5)
    mgr = _manager(tmp_path, fake_encoder)
    assert mgr.delete_frame("done", "frame_000002.jpg") == 4
    folder = tmp_path / "done"
    assert list_frames(str(folder)) == [f"frame_{i:06d}.jpg" for i in range(4)]
    assert [(folder / f"frame_{i:06d}.jpg").read_bytes() for i in range(4)] == [b"0", b"1", b"3", b"4"]
    info = next(i for i in mgr.status_all() if i.name == "done")
    assert info.frame_count == 4
    assert not info.is_active


def test_delete_refused_while_recording(tmp_path, fake_encoder):
    mgr = _manager(tmp_path, fake_encoder, start_after_layer1=False)
    name = mgr.start("live")
    try:
        with pytest.raises(SessionActive):
            mgr.delete_frame(name, "frame_000000.jpg")
        with pytest.raises(SessionActive):
            mgr.delete_session(name)
    finally:
        mgr.stop(name)
    mgr.delete_session(name)
    assert not (tmp_path / name).exists()


def test_paths_are_confined_to_the_session_folder(tmp_path, fake_encoder):
    _frames(tmp_path / "done", 1)
    (tmp_path / "done" / "notes.txt").write_text("x")
    mgr = _manager(tmp_path, fake_encoder)
    with pytest.raises(TimelapseNotFound):
        mgr.session_path("..")
    with pytest.raises(TimelapseNotFound):
        mgr.frames("missing")
    with pytest.raises(TimelapseError):
        mgr.delete_frame("done", "../frame_000000.jpg")
    with pytest.raises(TimelapseError):
        mgr.resolve_file("done", "notes.txt")
    with pytest.raises(TimelapseNotFound):
        mgr.resolve_file("done", "frame_000009.jpg")
    assert mgr.resolve_file("done", "frame_000000.jpg").endswith("frame_000000.jpg")


def test_status_reports_camel_case_fields(tmp_path, fake_encoder):
    _frames(tmp_path / "done", 2)
    (tmp_path / "done" / "done.mp4").write_bytes(b"mp4")
    mgr = _manager(tmp_path, fake_encoder)
    data = mgr.status_all()[0].to_dict()
    assert data["name"] == "done"
    assert data["frameCount"] == 2
    assert data["videoFiles"] == ["done.mp4"]
    assert data["isActive"] is False
    assert data["isPaused"] is False
    assert data["startTime"].endswith("Z")
    assert data["lastFrameTime"].endswith("Z")


def test_youtube_url_round_trips_through_metadata(tmp_path, fake_encoder):
    _frames(tmp_path / "done", 1)
    (tmp_path / "done" / ".metadata").write_text("session_name=done\nmoonraker_filename=done.gcode\n")
    mgr = _manager(tmp_path, fake_encoder)
    mgr.set_youtube_url("done", "https://youtu.be/xyz")
    meta = mgr.read_metadata("done")
    assert meta["youtubeUrl"] == "https://youtu.be/xyz"
    assert meta["moonrakerFilename"] == "done.gcode"
    assert meta["sessionName"] == "done"


def test_find_session_prefers_exact_match(tmp_path, fake_encoder):
    mgr = _manager(tmp_path, fake_encoder)
    try:
        mgr.start("my_benchy_2")
        mgr.start("benchy")
        assert mgr.find_session_for_filename("benchy.gcode").name == "benchy"
        mgr.stop("benchy")
        assert mgr.find_session_for_filename("benchy.gcode").name == "my_benchy_2"
        assert mgr.find_session_for_filename("cube.gcode") is None
    finally:
        mgr.stop_scheduler()


def test_stop_of_unknown_session_returns_none(tmp_path, fake_encoder):
    mgr = _manager(tmp_path, fake_encoder)
    assert mgr.stop("never-started") is None
    assert fake_encoder.calls == []
    assert not mgr.scheduler_running


def test_scheduler_runs_while_any_session_is_active(tmp_path, fake_encoder):
    mgr = _manager(tmp_path, fake_encoder)
    try:
        first = mgr.start("one")
        second = mgr.start("two")
        assert mgr.scheduler_running
        mgr.stop(first)
        assert mgr.scheduler_running
        mgr.stop(second)
        assert not mgr.scheduler_running
        third = mgr.start("three")
        assert mgr.scheduler_running
        mgr.stop(third)
    finally:
        mgr.stop_scheduler()


def test_concurrent_stop_and_start_keep_scheduler_armed(tmp_path, fake_encoder):
    mgr = _manager(tmp_path, fake_encoder)
    try:
        for i in range(25):
            old = mgr.start(f"old{i}")
            started = []
            stopper = threading.Thread(target=mgr.stop, args=(old,))
            starter = threading.Thread(target=lambda: started.append(mgr.start(f"new{i}")))
            stopper.start()
            starter.start()
            stopper.join()
            starter.join()
            assert mgr.scheduler_running
            mgr.stop(started[0])
            assert not mgr.scheduler_running
    finally:
        mgr.stop_scheduler()


def test_overrunning_tick_is_followed_immediately(tmp_path, fake_encoder):
    mgr = _manager(tmp_path, fake_encoder)
    mgr.period_seconds = 0.3
    ticks = []

    def _slow_tick():
        ticks.append(("begin", time.monotonic()))
        time.sleep(0.4)
        ticks.append(("end", time.monotonic()))
        return 0

    mgr.capture_tick = _slow_tick
    name = mgr.start("slow")
    try:
        assert wait_for(lambda: len(ticks) >= 3, timeout=3)
    finally:
        mgr.stop(name)
    first_end = ticks[1][1]
    second_begin = ticks[2][1]
    assert ticks[2][0] == "begin"
    assert second_begin - first_end < 0.2


def test_resume_after_frame_delete_counts_renumbered_frames(tmp_path, fake_encoder):
    root = tmp_path / "timelapse"
    _frames(root / "job", 5)
    (root / "job" / ".metadata").write_text("moonraker_filename=job.gcode\n")
    mgr = _manager(root, fake_encoder, start_after_layer1=False)
    assert mgr.delete_frame("job", "frame_000001.jpg") == 4
    try:
        assert mgr.start("unused", "job.gcode") == "job"
        assert mgr.get_session("job").frame_count == 5
        assert (root / "job" / "frame_000004.jpg").read_bytes() == JPEG
    finally:
        mgr.stop_scheduler()
