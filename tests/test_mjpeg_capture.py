import pytest
import requests

from helpers.capture import capture_jpeg, snapshot_url
from helpers.errors import CaptureTimeout, UpstreamUnavailable
from helpers.mjpeg import JpegScanner, first_jpeg, is_jpeg, multipart_frames, multipart_part

FRAME_A = b"\xff\xd8AAAA\xff\xd9"
FRAME_B = b"\xff\xd8BBBB\xff\xd9"


def test_scanner_splits_frames_across_chunk_boundaries():
    stream = b"--frame\r\n\r\n" + FRAME_A + b"\r\n--frame\r\n\r\n" + FRAME_B
    scanner = JpegScanner()
    frames = []
    for i in range(0, len(stream), 3):
        frames.extend(scanner.feed(stream[i:i + 3]))
    assert frames == [FRAME_A, FRAME_B]


def test_scanner_keeps_half_marker():
    scanner = JpegScanner()
    assert scanner.feed(b"junk\xff") == []
    assert scanner.feed(b"\xd8X\xff\xd9") == [b"\xff\xd8X\xff\xd9"]


def test_first_jpeg_and_is_jpeg():
    assert first_jpeg([b"xx", FRAME_A[:3], FRAME_A[3:], FRAME_B]) == FRAME_A
    assert first_jpeg([b"nothing"]) is None
    assert is_jpeg(FRAME_A)
    assert not is_jpeg(b"")
    assert not is_jpeg(FRAME_A[:-1])


def test_multipart_part_framing():
    part = multipart_part(FRAME_A)
    assert part.startswith(b"--frame\r\nContent-Type: image/jpeg\r\nContent-Length: 8\r\n\r\n")
    assert part.endswith(FRAME_A + b"\r\n")
    assert list(multipart_frames([FRAME_A, FRAME_B]))[1] == multipart_part(FRAME_B)


def test_snapshot_url_replaces_action():
    assert snapshot_url("http://cam/?action=stream") == "http://cam/?action=snapshot"
    assert snapshot_url("http://cam/webcam/?action=stream&x=1") == "http://cam/webcam/?x=1&action=snapshot"


class FakeResponse:
    def __init__(self, status=200, ctype="", content=b"", chunks=()):
        self.status_code = status
        self.headers = {"Content-Type": ctype}
        self.content = content
        self.chunks = list(chunks)
        self.closed = False

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def close(self):
        self.closed = True


class FakeHttp:
    def __init__(self, snapshot, stream):
        self.snapshot = snapshot
        self.stream = stream
        self.urls = []

    def get(self, url, stream=False, timeout=None):
        self.urls.append(url)
        reply = self.stream if stream else self.snapshot
        if isinstance(reply, Exception):
            raise reply
        return reply


def test_capture_prefers_snapshot():
    http = FakeHttp(FakeResponse(ctype="image/jpeg", content=FRAME_A), FakeResponse())
    assert capture_jpeg("http://cam/?action=stream", http=http) == FRAME_A
    assert http.urls == ["http://cam/?action=snapshot"]


def test_capture_scans_stream_when_snapshot_is_not_an_image():
    stream = FakeResponse(ctype="multipart/x-mixed-replace", chunks=[b"--frame\r\n", FRAME_B[:4], FRAME_B[4:]])
    http = FakeHttp(FakeResponse(ctype="text/html", content=b"<html>"), stream)
    assert capture_jpeg("http://cam/?action=stream", http=http) == FRAME_B
    assert stream.closed


def test_capture_errors():
    http = FakeHttp(requests.ConnectionError("refused"), requests.ConnectionError("refused"))
    with pytest.raises(UpstreamUnavailable):
        capture_jpeg("http://cam/", http=http)

    http = FakeHttp(None, requests.Timeout("slow"))
    with pytest.raises(CaptureTimeout):
        capture_jpeg("http://cam/", try_snapshot=False, http=http)

    http = FakeHttp(None, FakeResponse(chunks=[b"no jpeg here"]))
    with pytest.raises(UpstreamUnavailable):
        capture_jpeg("http://cam/", try_snapshot=False, http=http)

    http = FakeHttp(None, FakeResponse(status=404))
    with pytest.raises(UpstreamUnavailable):
        capture_jpeg("http://cam/", try_snapshot=False, http=http)
