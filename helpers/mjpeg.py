from typing import Iterable, Iterator, List, Optional

SOI = b'\xff\xd8'
EOI = b'\xff\xd9'

BOUNDARY = 'frame'
MULTIPART_MIMETYPE = f'multipart/x-mixed-replace; boundary={BOUNDARY}'

# Keep a scanner from growing without bound on a stream that never closes a frame
_MAX_BUFFER = 8 * 1024 * 1024
_TRIM_TO = 1024 * 1024


class JpegScanner:
    """Incremental SOI/EOI splitter for an MJPEG byte stream.

    Frames are never decoded: a frame is whatever sits between a start-of-image
    marker and the next end-of-image marker.
    """

    def __init__(self, max_buffer: int = _MAX_BUFFER):
        self._buf = bytearray()
        self._max = max_buffer

    def feed(self, chunk: bytes) -> List[bytes]:
        frames: List[bytes] = []
        if not chunk:
            return frames
        buf = self._buf
        buf.extend(chunk)
        while True:
            start = buf.find(SOI)
            if start == -1:
                # keep a trailing 0xFF in case it is half of a marker
                if buf.endswith(b'\xff'):
                    del buf[:-1]
                else:
                    buf.clear()
                break
            end = buf.find(EOI, start + 2)
            if end == -1:
                if start > 0:
                    del buf[:start]
                if len(buf) > self._max:
                    del buf[:-_TRIM_TO]
                break
            frames.append(bytes(buf[start:end + 2]))
            del buf[:end + 2]
        return frames

    def reset(self) -> None:
        self._buf.clear()


def first_jpeg(chunks: Iterable[bytes]) -> Optional[bytes]:
    scanner = JpegScanner()
    for chunk in chunks:
        frames = scanner.feed(chunk)
        if frames:
            return frames[0]
    return None


def is_jpeg(data: Optional[bytes]) -> bool:
    return bool(data) and data[:2] == SOI and data[-2:] == EOI


def multipart_part(jpeg: bytes) -> bytes:
    return (
        b'--' + BOUNDARY.encode() + b'\r\nContent-Type: image/jpeg\r\nContent-Length: '
        + str(len(jpeg)).encode() + b'\r\n\r\n' + jpeg + b'\r\n'
    )


def multipart_frames(frames: Iterable[bytes]) -> Iterator[bytes]:
    for jpeg in frames:
        yield multipart_part(jpeg)
