import logging
import threading
import time
from typing import Iterator, Tuple

import requests

from helpers.capture import capture_jpeg
from helpers.encoders import load_fallback_jpeg
from helpers.mjpeg import MULTIPART_MIMETYPE, multipart_part

logger = logging.getLogger('printstreamer.source')

CONNECT_TIMEOUT = 5
READ_TIMEOUT = 30
CHUNK_SIZE = 16384


class SourceProxy:
    """Re-serves the printer's upstream MJPEG, or a black-frame loop when it is unreachable.

    Each consumer opens its own upstream GET; the camera is treated as idempotent.
    """

    def __init__(self, upstream_url: str, fallback_image: str = '', fallback_fps: float = 2,
                 width: int = 640, height: int = 360, disabled: bool = False,
                 capture_timeout: float = 6.0, snapshot_timeout: float = 5.0, http=None):
        self.upstream_url = (upstream_url or '').strip()
        self.fallback_fps = max(0.2, float(fallback_fps or 2))
        self.capture_timeout = capture_timeout
        self.snapshot_timeout = snapshot_timeout
        self._fallback_image = fallback_image
        self._width = width
        self._height = height
        self._fallback: bytes | None = None
        self._disabled = bool(disabled)
        self._lock = threading.Lock()
        self._http = http or requests

    @property
    def disabled(self) -> bool:
        with self._lock:
            return self._disabled

    def set_disabled(self, value: bool) -> bool:
        with self._lock:
            self._disabled = bool(value)
            logger.info('Camera %s', 'disabled (serving fallback)' if self._disabled else 'enabled')
            return self._disabled

    def toggle(self) -> bool:
        with self._lock:
            self._disabled = not self._disabled
            logger.info('Camera toggled -> disabled=%s', self._disabled)
            return self._disabled

    def fallback_jpeg(self) -> bytes:
        if self._fallback is None:
            self._fallback = load_fallback_jpeg(self._fallback_image, self._width, self._height)
        return self._fallback

    def _use_upstream(self) -> bool:
        return bool(self.upstream_url) and not self.disabled

    def open_stream(self) -> Tuple[str, Iterator[bytes]]:
        """(content type, byte iterator) for one consumer."""
        if self._use_upstream():
            try:
                resp = self._http.get(self.upstream_url, stream=True, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT))
                if resp.status_code < 400:
                    ctype = resp.headers.get('Content-Type') or MULTIPART_MIMETYPE
                    return ctype, self._relay(resp)
                logger.warning('Upstream %s answered %d; serving fallback', self.upstream_url, resp.status_code)
                resp.close()
            except requests.RequestException as e:
                logger.warning('Upstream %s unreachable (%s); serving fallback', self.upstream_url, e)
        return MULTIPART_MIMETYPE, self.synthetic_stream()

    def _relay(self, resp) -> Iterator[bytes]:
        try:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            logger.info('Upstream stream ended: %s', e)
        finally:
            resp.close()

    def synthetic_stream(self, limit: int | None = None) -> Iterator[bytes]:
        """Endless multipart stream of the fallback frame at `fallback_fps`."""
        part = multipart_part(self.fallback_jpeg())
        period = 1.0 / self.fallback_fps
        sent = 0
        while limit is None or sent < limit:
            yield part
            sent += 1
            if limit is None or sent < limit:
                time.sleep(period)

    def snapshot(self) -> bytes:
        if not self._use_upstream():
            return self.fallback_jpeg()
        return capture_jpeg(self.upstream_url, timeout=self.capture_timeout,
                            snapshot_timeout=self.snapshot_timeout, http=self._http)

    def probe(self) -> dict:
        """Reachability of the upstream camera, for health reporting."""
        if not self.upstream_url:
            return {'configured': False, 'reachable': False, 'disabled': self.disabled}
        try:
            resp = self._http.get(self.upstream_url, stream=True, timeout=(CONNECT_TIMEOUT, CONNECT_TIMEOUT))
            status = resp.status_code
            ctype = resp.headers.get('Content-Type', '')
            resp.close()
            return {'configured': True, 'reachable': status < 400, 'status': status,
                    'content_type': ctype, 'disabled': self.disabled}
        except requests.RequestException as e:
            return {'configured': True, 'reachable': False, 'error': str(e), 'disabled': self.disabled}
