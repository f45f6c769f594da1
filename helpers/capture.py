import logging
import time
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests

from helpers.errors import CaptureError, CaptureTimeout, UpstreamUnavailable
from helpers.mjpeg import JpegScanner

logger = logging.getLogger('printstreamer.capture')

_IMAGE_TYPES = ('jpeg', 'jpg', 'image')


def snapshot_url(url: str) -> str:
    """Same URL with action=snapshot set (mjpg-streamer / crowsnest convention)."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k.lower() != 'action']
    query.append(('action', 'snapshot'))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _try_snapshot(http, url: str, timeout: float) -> bytes | None:
    try:
        resp = http.get(snapshot_url(url), timeout=timeout)
    except requests.RequestException as e:
        logger.debug('Snapshot request failed for %s: %s', url, e)
        return None
    try:
        ctype = (resp.headers.get('Content-Type') or '').lower()
        if resp.status_code == 200 and any(t in ctype for t in _IMAGE_TYPES) and resp.content:
            return resp.content
        return None
    finally:
        resp.close()


def capture_jpeg(url: str, timeout: float = 6.0, snapshot_timeout: float = 5.0,
                 try_snapshot: bool = True, http=None) -> bytes:
    """Return one complete JPEG from `url`.

    First tries the upstream snapshot form; otherwise scans the MJPEG stream for
    the first SOI..EOI frame. Raises CaptureTimeout when nothing arrives in time,
    UpstreamUnavailable when the stage cannot be reached or ends without a frame.
    """
    http = http or requests
    if try_snapshot:
        data = _try_snapshot(http, url, snapshot_timeout)
        if data:
            return data

    deadline = time.monotonic() + timeout
    try:
        resp = http.get(url, stream=True, timeout=(min(timeout, 5.0), timeout))
    except requests.Timeout as e:
        raise CaptureTimeout(f'timed out connecting to {url}') from e
    except requests.ConnectionError as e:
        raise UpstreamUnavailable(f'cannot reach {url}: {e}') from e
    except requests.RequestException as e:
        raise CaptureError(str(e)) from e

    try:
        if resp.status_code >= 400:
            raise UpstreamUnavailable(f'{url} answered {resp.status_code}')
        scanner = JpegScanner()
        try:
            for chunk in resp.iter_content(chunk_size=16384):
                frames = scanner.feed(chunk)
                if frames:
                    return frames[0]
                if time.monotonic() > deadline:
                    raise CaptureTimeout(f'no JPEG frame from {url} within {timeout:.0f}s')
        except requests.Timeout as e:
            raise CaptureTimeout(f'read timed out on {url}') from e
        except requests.ConnectionError as e:
            raise UpstreamUnavailable(f'stream from {url} broke: {e}') from e
        except requests.RequestException as e:
            raise CaptureError(str(e)) from e
        raise UpstreamUnavailable(f'{url} closed before a complete frame')
    finally:
        resp.close()
