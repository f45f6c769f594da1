import threading
import time
from typing import Iterator, Optional

from helpers.mjpeg import multipart_part


class FrameHub:
    """Latest-frame fan-out for an MJPEG route.

    One producer publishes complete JPEGs; every client always gets the most
    recent frame, so a slow client skips frames instead of holding anyone up.
    """

    def __init__(self, name: str):
        self.name = name
        self._latest: Optional[bytes] = None
        self._seq: int = 0
        self._clients: int = 0
        self._last_client_seen = time.monotonic()
        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)
        self._open = True

    def publish(self, data: bytes) -> None:
        with self._lock:
            self._latest = data
            self._seq += 1
            self._cv.notify_all()

    def latest(self) -> Optional[bytes]:
        with self._lock:
            return self._latest

    def clear(self) -> None:
        with self._lock:
            self._latest = None

    def close(self) -> None:
        with self._lock:
            self._open = False
            self._cv.notify_all()

    def reopen(self) -> None:
        with self._lock:
            self._open = True

    @property
    def clients(self) -> int:
        with self._lock:
            return self._clients

    def touch(self) -> None:
        with self._lock:
            self._last_client_seen = time.monotonic()

    def idle_for(self) -> float:
        """Seconds since the last client left (0 while anyone is attached)."""
        with self._lock:
            if self._clients > 0:
                return 0.0
            return time.monotonic() - self._last_client_seen

    def wait_frame(self, timeout: float) -> Optional[bytes]:
        """Next frame published after this call, or None on timeout/close."""
        deadline = time.monotonic() + timeout
        with self._lock:
            start = self._seq
            while self._open and self._seq == start:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cv.wait(timeout=remaining)
            return self._latest if self._seq != start else None

    def frames(self, keepalive: float = 1.0) -> Iterator[bytes]:
        with self._lock:
            self._clients += 1
        last = -1
        try:
            while True:
                with self._lock:
                    while self._open and (self._seq == last or self._latest is None):
                        self._cv.wait(timeout=keepalive)
                    if not self._open:
                        break
                    last = self._seq
                    data = self._latest
                if data:
                    yield data
        finally:
            with self._lock:
                self._clients -= 1
                self._last_client_seen = time.monotonic()

    def multipart_stream(self) -> Iterator[bytes]:
        """Flask generator for a multipart/x-mixed-replace route."""
        for data in self.frames():
            yield multipart_part(data)
