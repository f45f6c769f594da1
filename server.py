import threading
import os
import logging
import atexit
import uuid
import socket
import io
from collections import deque

from flask import Flask, Response, request, send_file, jsonify
from werkzeug.utils import secure_filename

from helpers.config import build_settings, save_config as _save_config
from helpers.errors import StreamerError, CaptureError, CaptureTimeout, SessionActive, UpstreamUnavailable, \
    ConfigurationMissing
from helpers.mjpeg import MULTIPART_MIMETYPE
from helpers.source import SourceProxy
from helpers.moonraker import MoonrakerClient
from helpers.overlay_text import OverlayTextWriter
from helpers.overlay_layout import compute_layout
from helpers.compositor import OverlayCompositor
from helpers.audio_program import AudioProgram, SUPPORTED_EXTENSIONS
from helpers.audio_broadcast import AudioBroadcaster
from helpers.mix import MixStreamer, MIX_MIMETYPE
from helpers.rtmp import RtmpPublisher, PublisherState, build_publish_args
from helpers.timelapse import TimelapseManager
from helpers.print_monitor import PrintMonitor
from helpers.mdns import MdnsAdvertiser

app = Flask(__name__)
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
WORK_DIR = os.path.abspath(os.environ.get('PRINTSTREAMER_WORKDIR', BASE_DIR))
APP_PORT = int(os.environ.get('PRINTSTREAMER_PORT', '8080'))
APP_VERSION = os.environ.get('PRINTSTREAMER_VERSION', '0.1.0')
DEVICE_NAME = os.environ.get('PRINTSTREAMER_DEVICE_NAME', 'PrintStreamer')
API_TOKEN = os.environ.get('PRINTSTREAMER_API_TOKEN', '').strip()
MDNS_DISABLE = os.environ.get('PRINTSTREAMER_MDNS_DISABLE', '0') in ('1', 'true', 'TRUE')
AUTOSTART = os.environ.get('PRINTSTREAMER_AUTOSTART', '1') not in ('0', 'false', 'FALSE')

# mDNS state
_mdns_adv = None
_startup_logged = False

# Logging configuration
LOG_LEVEL = (os.environ.get('PRINTSTREAMER_LOG_LEVEL', 'INFO') or 'INFO').upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='[%(asctime)s] %(levelname)s %(name)s: %(message)s'
)
logger = logging.getLogger('printstreamer')


# In-memory ring buffer for recent logs (download via /logs/download)
class _RingBufferHandler(logging.Handler):
    def __init__(self, max_bytes: int = 1_048_576, max_lines: int = 10_000):
        super().__init__()
        self.max_bytes = int(max_bytes)
        self.max_lines = int(max_lines)
        self._buf = deque()
        self._bytes = 0
        self._lock = threading.Lock()

    def emit(self, record):
        try:
            msg = self.format(record) + '\n'
        except Exception:
            msg = record.getMessage() + '\n'
        data = msg.encode('utf-8', 'replace')
        with self._lock:
            self._buf.append(data)
            self._bytes += len(data)
            while self._bytes > self.max_bytes or len(self._buf) > self.max_lines:
                old = self._buf.popleft()
                self._bytes -= len(old)

    def dump(self, n: int | None = None) -> bytes:
        with self._lock:
            if n is not None and 0 < n < len(self._buf):
                items = list(self._buf)[-n:]
            else:
                items = list(self._buf)
        return b''.join(items)


_logbuf_handler = _RingBufferHandler(
    max_bytes=int(os.environ.get('PRINTSTREAMER_LOG_BUFFER_BYTES', '1048576')),
    max_lines=int(os.environ.get('PRINTSTREAMER_LOG_BUFFER_LINES', '10000')),
)
_logbuf_handler.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
logging.getLogger().addHandler(_logbuf_handler)

NO_STORE = {
    'Cache-Control': 'no-store, no-cache, must-revalidate, max-age=0, no-transform',
    'Pragma': 'no-cache',
    'Expires': '0',
}

# Thread-safe settings lock
settings_lock = threading.Lock()

# Persisted config path
CONFIG_PATH = os.environ.get('PRINTSTREAMER_CONFIG') or os.path.join(WORK_DIR, 'config.json')
settings = build_settings(CONFIG_PATH)

# Ensure a persistent short device_id
DEVICE_ID = settings['server'].get('device_id')
if not DEVICE_ID:
    DEVICE_ID = uuid.uuid4().hex[:12]
    try:
        with settings_lock:
            _save_config(CONFIG_PATH, 'server', {'device_id': DEVICE_ID})
    except OSError as e:
        logger.warning('Could not persist device id: %s', e)


def _persist(section: str, **values) -> None:
    """Apply runtime toggles to the live settings and write them to config.json."""
    with settings_lock:
        settings[section].update(values)
        try:
            _save_config(CONFIG_PATH, section, values)
        except OSError as e:
            logger.warning('Could not save %s settings: %s', section, e)


def _setting(section: str, key: str):
    with settings_lock:
        return settings[section].get(key)


def _resolve(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(WORK_DIR, path)


def _local_url(path: str) -> str:
    base = (_setting('server', 'local_base_url') or '').rstrip('/')
    return f"{base or f'http://127.0.0.1:{APP_PORT}'}{path}"


# ---------- Services ----------

_stream_cfg = settings['stream']
source_proxy = SourceProxy(
    _stream_cfg['source_url'],
    fallback_image=_resolve(_stream_cfg['fallback_image']) if _stream_cfg['fallback_image'] else '',
    fallback_fps=_stream_cfg['fallback_fps'],
    width=int(_stream_cfg['fallback_width']),
    height=int(_stream_cfg['fallback_height']),
    disabled=bool(_stream_cfg['camera_disabled']),
    capture_timeout=float(_stream_cfg['capture_timeout']),
    snapshot_timeout=float(_stream_cfg['snapshot_timeout']),
)

_moon_cfg = settings['moonraker']
moonraker = MoonrakerClient(_moon_cfg['base_url'], _moon_cfg['api_key'], _moon_cfg['auth_header'],
                            timeout=float(_moon_cfg['timeout']))

_audio_cfg = settings['audio']
audio_program = AudioProgram(_resolve(_audio_cfg['folder']), enabled=bool(_audio_cfg['enabled']))
audio_program.rescan()
audio_broadcaster = AudioBroadcaster(audio_program, bitrate=str(_audio_cfg['bitrate']),
                                     sample_rate=int(_audio_cfg['sample_rate']))


def _current_song():
    if not _setting('overlay', 'show_song'):
        return None
    return audio_program.current_song()


_overlay_cfg = settings['overlay']
OVERLAY_TEXT_PATH = _resolve(_overlay_cfg['text_file']) if _overlay_cfg['text_file'] \
    else os.path.join(WORK_DIR, 'overlay', 'overlay.txt')
overlay_writer = OverlayTextWriter(moonraker, _overlay_cfg['template'], OVERLAY_TEXT_PATH,
                                   refresh_ms=int(_overlay_cfg['refresh_ms']), song_provider=_current_song)
compositor = OverlayCompositor(_local_url('/stream/source'), OVERLAY_TEXT_PATH, _overlay_cfg,
                               before_start=overlay_writer.ensure_file)

mix_streamer = MixStreamer(_local_url('/stream/overlay'), _local_url('/stream/audio'), settings['mix'],
                           audio_enabled=lambda: audio_program.enabled)


def _rtmp_args(target: str):
    with settings_lock:
        cfg = dict(settings['rtmp'])
    return build_publish_args(
        target, cfg.get('source', 'mix'),
        mix_url=_local_url('/stream/mix'),
        overlay_url=_local_url('/stream/overlay'),
        audio_url=_local_url('/stream/audio'),
        fps=int(cfg.get('fps', 30)),
        bitrate_kbps=int(cfg.get('bitrate_kbps', 2500)),
        audio_enabled=audio_program.enabled,
    )


_rtmp_cfg = settings['rtmp']
rtmp_publisher = RtmpPublisher(_rtmp_args, _rtmp_cfg['url'], _rtmp_cfg['stream_key'],
                               max_attempts=int(_rtmp_cfg['max_attempts']))
audio_broadcaster.on_track_finished = rtmp_publisher.on_track_finished


def _live_on_print_started(job: str) -> None:
    if not _setting('rtmp', 'auto_broadcast') or rtmp_publisher.state != PublisherState.IDLE:
        return
    if _setting('rtmp', 'source') == 'mix' and not _mix_enabled():
        logger.warning('Auto-broadcast for %s skipped: mix stream disabled', job)
        return
    try:
        rtmp_publisher.start()
    except StreamerError as e:
        logger.warning('Auto-broadcast for %s failed: %s', job, e)
        return
    logger.info('Auto-broadcast started for %s', job)


def _live_on_print_finished(job: str) -> None:
    if rtmp_publisher.state == PublisherState.IDLE:
        return
    if not _setting('rtmp', 'end_after_print'):
        logger.info('Leaving live publish running after %s', job)
        return
    logger.info('Print %s finished; stopping live publish', job)
    rtmp_publisher.stop()


_tl_cfg = settings['timelapse']
timelapse_manager = TimelapseManager(_resolve(_tl_cfg['main_folder']), _tl_cfg,
                                     capture_fn=source_proxy.snapshot, metadata_fn=moonraker.file_metadata)
print_monitor = PrintMonitor(moonraker, timelapse_manager, poll_seconds=float(_tl_cfg['poll_seconds']),
                             idle_finalize_seconds=float(_tl_cfg['idle_finalize_seconds']),
                             on_print_started=_live_on_print_started,
                             on_print_finished=_live_on_print_finished)


def _rebind_local_urls():
    """Point the loopback consumers at the port we actually bound."""
    compositor.source_url = _local_url('/stream/source')
    mix_streamer.overlay_url = _local_url('/stream/overlay')
    mix_streamer.audio_url = _local_url('/stream/audio')


# Stop background work on shutdown, consumers before producers
def _on_shutdown():
    steps = (
        ('print monitor', print_monitor.stop),
        ('timelapse scheduler', timelapse_manager.stop_scheduler),
        ('timelapse sessions', timelapse_manager.stop_all),
        ('rtmp publisher', rtmp_publisher.stop),
        ('overlay compositor', compositor.stop),
        ('audio broadcaster', audio_broadcaster.stop),
        ('overlay writer', overlay_writer.stop),
    )
    for label, step in steps:
        try:
            step()
        except Exception as e:
            logger.warning('Shutdown: %s failed: %s', label, e)
    # Stop mDNS advertiser if running
    global _mdns_adv
    if _mdns_adv is not None:
        try:
            _mdns_adv.stop()
        except Exception as e:
            logger.warning('Shutdown: mDNS failed: %s', e)
        _mdns_adv = None


atexit.register(_on_shutdown)

_services_started = False
_services_lock = threading.Lock()


def _ensure_services_started():
    global _services_started
    if not AUTOSTART:
        return
    with _services_lock:
        if _services_started:
            return
        _services_started = True
    try:
        overlay_writer.start()
    except ConfigurationMissing as e:
        logger.error('Overlay text disabled: %s', e)
    audio_broadcaster.start()
    if _setting('timelapse', 'auto_start') and moonraker.configured:
        print_monitor.start()
    logger.info('Background services started')


@app.before_request
def _ensure_started():
    global _startup_logged
    # One-time startup log and mDNS init for Gunicorn/WSGI path (Flask>=3 removed before_first_request)
    if not _startup_logged:
        logger.info("Device ID: %s, Version: %s, mDNS: %s", str(DEVICE_ID), str(APP_VERSION),
                    'ENABLED' if not MDNS_DISABLE else 'DISABLED')
        _startup_logged = True
    _ensure_services_started()
    if AUTOSTART:
        _start_mdns_advertiser()


# mDNS advertiser lifecycle
def _start_mdns_advertiser():
    global _mdns_adv
    if MDNS_DISABLE:
        return
    if _mdns_adv is not None:
        return
    try:
        txt = {
            'id': DEVICE_ID,
            'name': DEVICE_NAME,
            'ver': APP_VERSION,
            'streams': '/stream/source,/stream/overlay,/stream/audio,/stream/mix',
            'auth': 'token' if API_TOKEN else 'none',
            'api': '/status,/health',
            'proto': '1',
        }
        adv = MdnsAdvertiser(DEVICE_NAME, APP_PORT, txt)
        adv.start()
        _mdns_adv = adv
    except (OSError, ValueError) as e:
        logger.warning('mDNS advertise failed: %s', e)


@app.after_request
def _add_observability_headers(resp):
    resp.headers['Server'] = f"PrintStreamer/{APP_VERSION}"
    resp.headers['X-PrintStreamer-Version'] = str(APP_VERSION)
    resp.headers['X-PrintStreamer-Device'] = str(DEVICE_ID or '')
    return resp


@app.errorhandler(StreamerError)
def _streamer_error(e):
    return jsonify({'success': False, 'error': str(e)}), e.status


def _find_available_port(start_port: int, attempts: int = 10) -> int:
    """Find a free TCP port starting at start_port, trying up to attempts times."""
    for i in range(max(1, attempts)):
        p = start_port + i
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            # Allow quick reuse so the probe doesn't hold the port
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind(('0.0.0.0', p))
            return p
        except OSError:
            continue
        finally:
            s.close()
    return start_port


# ---------- Request helpers ----------

def _ok(**payload):
    return jsonify({'success': True, **payload})


def _fail(error: str, code: int = 400):
    return jsonify({'success': False, 'error': error}), code


def _param(name: str):
    """Query-string value, falling back to the JSON body."""
    value = request.args.get(name)
    if value is None:
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            value = body.get(name)
    return value


def _bool_param(name: str):
    value = _param(name)
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _jpeg_response(data: bytes) -> Response:
    return Response(data, mimetype='image/jpeg', headers=NO_STORE)


def _overlay_enabled() -> bool:
    return bool(_setting('overlay', 'enabled'))


def _mix_enabled() -> bool:
    return bool(_setting('mix', 'enabled'))


# Health and service endpoints
@app.route('/health')
def health():
    return ('ok', 200, {'Content-Type': 'text/plain; charset=utf-8'})


@app.route('/status')
def status():
    # Enforce bearer token if configured
    if API_TOKEN:
        auth = request.headers.get('Authorization', '')
        if not auth.startswith('Bearer '):
            return ({'error': 'unauthorized'}, 401)
        token = auth[len('Bearer '):].strip()
        if token != API_TOKEN:
            return ({'error': 'forbidden'}, 403)
    data = {
        'id': DEVICE_ID,
        'name': DEVICE_NAME,
        'version': APP_VERSION,
        'port': APP_PORT,
        'camera': {
            'configured': bool(source_proxy.upstream_url),
            'disabled': source_proxy.disabled,
        },
        'overlay': {'enabled': _overlay_enabled(), **compositor.status()},
        'audio': audio_broadcaster.status(),
        'mix': {'enabled': _mix_enabled()},
        'live': rtmp_publisher.status(),
        'timelapse': {
            'active': timelapse_manager.active_names(),
            'scheduler': timelapse_manager.scheduler_running,
        },
        'auth_mode': 'token' if API_TOKEN else 'none',
    }
    return (data, 200)


@app.route('/logs/download')
def logs_download():
    """Download recent server logs as a text file. Optional query param n=<lines>."""
    try:
        n = int(request.args.get('n', '0'))
    except ValueError:
        n = 0
    payload = _logbuf_handler.dump(n if n > 0 else None)
    if not payload:
        payload = b'No logs captured yet.\n'
    buf = io.BytesIO(payload)
    resp = send_file(buf, mimetype='text/plain; charset=utf-8', as_attachment=True,
                     download_name='printstreamer-logs.txt')
    resp.headers.update(NO_STORE)
    return resp


# ---------- Streams ----------

@app.route('/stream/source')
def stream_source():
    ctype, body = source_proxy.open_stream()
    return Response(body, content_type=ctype, headers=NO_STORE)


@app.route('/stream/source/capture')
def stream_source_capture():
    return _jpeg_response(source_proxy.snapshot())


@app.route('/stream/overlay')
def stream_overlay():
    if not _overlay_enabled():
        return stream_source()
    compositor.ensure_running()
    return Response(compositor.hub.multipart_stream(), mimetype=MULTIPART_MIMETYPE, headers=NO_STORE)


def _overlay_frame(timeout: float) -> bytes:
    if not _overlay_enabled():
        return source_proxy.snapshot()
    compositor.ensure_running()
    compositor.hub.touch()
    frame = compositor.hub.latest() or compositor.hub.wait_frame(timeout)
    if frame is None:
        raise CaptureTimeout(f'no overlay frame within {timeout:.0f}s')
    return frame


@app.route('/stream/overlay/capture')
def stream_overlay_capture():
    return _jpeg_response(_overlay_frame(float(_setting('stream', 'capture_timeout'))))


@app.route('/stream/overlay/coords')
def stream_overlay_coords():
    with settings_lock:
        cfg = dict(settings['overlay'])
    layout = compute_layout(OVERLAY_TEXT_PATH, int(cfg['font_size']), int(cfg['box_height']), cfg['x'], cfg['y'])
    return jsonify({'success': True, 'box_height': int(cfg['box_height']), 'font_size': int(cfg['font_size']),
                    **layout})


@app.route('/stream/audio')
@app.route('/api/audio/stream')
def stream_audio():
    if not audio_broadcaster.running:
        audio_broadcaster.start()
    return Response(audio_broadcaster.stream(), mimetype='audio/mpeg', headers=NO_STORE)


@app.route('/stream/mix')
def stream_mix():
    if not _mix_enabled():
        return _fail('mix stream disabled', 503)
    proc = mix_streamer.start()
    return Response(mix_streamer.stream(proc), mimetype=MIX_MIMETYPE, headers=NO_STORE)


@app.route('/stream/mix/capture')
def stream_mix_capture():
    if not _mix_enabled():
        return _fail('mix stream disabled', 503)
    frame = mix_streamer.grab_frame(_local_url('/stream/mix'), timeout=float(_setting('timelapse', 'capture_timeout')))
    if frame is None:
        raise CaptureError('mix produced no frame')
    return _jpeg_response(frame)


# ---------- Audio API ----------

@app.route('/api/audio/tracks')
def api_audio_tracks():
    tracks = [{'name': t.name, 'format': t.format} for t in audio_program.tracks()]
    return _ok(tracks=tracks, count=len(tracks))


@app.route('/api/audio/state')
def api_audio_state():
    return _ok(**audio_program.state())


@app.route('/api/audio/broadcast/status')
def api_audio_broadcast_status():
    return _ok(**audio_broadcaster.status())


def _names_param():
    body = request.get_json(silent=True)
    names = []
    if isinstance(body, dict):
        raw = body.get('names') or ([body['name']] if body.get('name') else [])
        names = [str(n) for n in raw if n]
    names += request.args.getlist('name')
    return names


@app.route('/api/audio/queue', methods=['POST'])
def api_audio_queue():
    names = _names_param()
    if not names:
        return _fail('name required')
    added = audio_program.enqueue(*names)
    if not added:
        return _fail('no matching tracks', 404)
    return _ok(added=added, queue=audio_program.state()['queue'])


@app.route('/api/audio/queue/remove', methods=['POST'])
def api_audio_queue_remove():
    names = _names_param()
    if not names:
        return _fail('name required')
    removed = audio_program.remove(*names)
    return _ok(removed=removed, queue=audio_program.state()['queue'])


@app.route('/api/audio/clear', methods=['POST'])
def api_audio_clear():
    audio_program.clear()
    return _ok()


@app.route('/api/audio/play', methods=['POST'])
def api_audio_play():
    track = audio_program.play()
    return _ok(current=track.name if track else None)


@app.route('/api/audio/pause', methods=['POST'])
def api_audio_pause():
    audio_program.pause()
    return _ok()


@app.route('/api/audio/toggle', methods=['POST'])
def api_audio_toggle():
    return _ok(is_playing=audio_program.toggle())


@app.route('/api/audio/next', methods=['POST'])
def api_audio_next():
    track = audio_program.next()
    return _ok(current=track.name if track else None)


@app.route('/api/audio/prev', methods=['POST'])
def api_audio_prev():
    track = audio_program.previous()
    return _ok(current=track.name if track else None)


@app.route('/api/audio/shuffle', methods=['POST'])
def api_audio_shuffle():
    enabled = _bool_param('enabled')
    if enabled is None:
        return _fail('enabled required')
    audio_program.set_shuffle(enabled)
    return _ok(shuffle=enabled)


@app.route('/api/audio/repeat', methods=['POST'])
def api_audio_repeat():
    try:
        mode = audio_program.set_repeat(_param('mode') or '')
    except ValueError as e:
        return _fail(str(e))
    return _ok(repeat=mode)


@app.route('/api/audio/enabled', methods=['GET', 'POST'])
def api_audio_enabled():
    if request.method == 'POST':
        enabled = _bool_param('enabled')
        if enabled is None:
            return _fail('enabled required')
        audio_broadcaster.apply_enabled_state(enabled)
        _persist('audio', enabled=enabled)
    return _ok(enabled=audio_program.enabled)


@app.route('/api/audio/select', methods=['POST'])
def api_audio_select():
    name = _param('name')
    if not name:
        return _fail('name required')
    path = audio_program.select_by_name(name)
    if path is None:
        return _fail(f'track {name} not found', 404)
    return _ok(current=audio_program.current().name)


@app.route('/api/audio/scan', methods=['POST'])
def api_audio_scan():
    return _ok(count=audio_program.rescan())


@app.route('/api/audio/folder', methods=['POST'])
def api_audio_folder():
    path = (_param('path') or '').strip()
    if not path:
        return _fail('path required')
    path = _resolve(path)
    if not os.path.isdir(path):
        return _fail(f'{path} is not a directory', 404)
    count = audio_program.set_folder(path)
    _persist('audio', folder=path)
    return _ok(folder=path, count=count)


@app.route('/api/audio/preview')
def api_audio_preview():
    track = audio_program.find(request.args.get('name') or '')
    if track is None:
        return _fail('track not found', 404)
    return send_file(track.path, conditional=True)


def _unique_upload_path(folder: str, filename: str) -> str:
    stem, ext = os.path.splitext(filename)
    candidate = os.path.join(folder, filename)
    n = 1
    while os.path.exists(candidate):
        candidate = os.path.join(folder, f'{stem} ({n}){ext}')
        n += 1
    return candidate


@app.route('/api/audio/upload', methods=['POST'])
def api_audio_upload():
    limit = int(_setting('audio', 'max_upload_bytes'))
    if request.content_length is not None and request.content_length > limit:
        return _fail(f'file exceeds {limit} bytes', 413)
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        return _fail('file required')
    filename = secure_filename(upload.filename)
    ext = os.path.splitext(filename)[1].lower()
    if not filename or ext not in SUPPORTED_EXTENSIONS:
        return _fail(f'unsupported file type {ext or "(none)"}')
    folder = audio_program.folder
    os.makedirs(folder, exist_ok=True)
    dest = _unique_upload_path(folder, filename)
    upload.save(dest)
    if os.path.getsize(dest) > limit:
        os.remove(dest)
        return _fail(f'file exceeds {limit} bytes', 413)
    audio_program.rescan()
    logger.info('Uploaded audio %s', os.path.basename(dest))
    return _ok(name=os.path.splitext(os.path.basename(dest))[0], filename=os.path.basename(dest))


# ---------- Camera / overlay / mix toggles ----------

def _camera_state():
    return _ok(disabled=source_proxy.disabled, configured=bool(source_proxy.upstream_url))


@app.route('/api/camera')
def api_camera():
    return _camera_state()


@app.route('/api/camera/on', methods=['POST'])
def api_camera_on():
    _persist('stream', camera_disabled=source_proxy.set_disabled(False))
    return _camera_state()


@app.route('/api/camera/off', methods=['POST'])
def api_camera_off():
    _persist('stream', camera_disabled=source_proxy.set_disabled(True))
    return _camera_state()


@app.route('/api/camera/toggle', methods=['POST'])
def api_camera_toggle():
    _persist('stream', camera_disabled=source_proxy.toggle())
    return _camera_state()


@app.route('/api/overlay/enabled', methods=['GET', 'POST'])
def api_overlay_enabled():
    if request.method == 'POST':
        enabled = _bool_param('enabled')
        if enabled is None:
            return _fail('enabled required')
        _persist('overlay', enabled=enabled)
        if not enabled:
            compositor.stop()
        logger.info('Overlay %s', 'enabled' if enabled else 'disabled')
    return _ok(enabled=_overlay_enabled())


@app.route('/api/stream/mix/enabled', methods=['GET', 'POST'])
def api_mix_enabled():
    if request.method == 'POST':
        enabled = _bool_param('enabled')
        if enabled is None:
            return _fail('enabled required')
        _persist('mix', enabled=enabled)
        logger.info('Mix stream %s', 'enabled' if enabled else 'disabled')
    return _ok(enabled=_mix_enabled())


# ---------- Live (RTMP) ----------

@app.route('/api/live/start', methods=['POST'])
def api_live_start():
    if rtmp_publisher.state != PublisherState.IDLE:
        return _fail(f'publisher is {rtmp_publisher.state.value}', 409)
    if _setting('rtmp', 'source') == 'mix' and not _mix_enabled():
        return _fail('mix stream disabled', 409)
    try:
        rtmp_publisher.start(_param('url'), _param('key'))
    except StreamerError as e:
        return _fail(str(e))
    return _ok(**rtmp_publisher.status())


@app.route('/api/live/stop', methods=['POST'])
def api_live_stop():
    rtmp_publisher.stop()
    return _ok(**rtmp_publisher.status())


@app.route('/api/live/status')
def api_live_status():
    return _ok(**rtmp_publisher.status())


@app.route('/api/stream/end-after-song', methods=['GET', 'POST'])
def api_end_after_song():
    if request.method == 'POST':
        enabled = _bool_param('enabled')
        if enabled is None:
            return _fail('enabled required')
        rtmp_publisher.set_end_after_song(enabled)
    return _ok(enabled=rtmp_publisher.end_after_song)


@app.route('/api/config/auto-broadcast', methods=['GET', 'POST'])
def api_auto_broadcast():
    if request.method == 'POST':
        enabled = _bool_param('enabled')
        if enabled is None:
            return _fail('enabled required')
        _persist('rtmp', auto_broadcast=enabled)
        logger.info('Auto-broadcast: %s', 'enabled' if enabled else 'disabled')
    return _ok(enabled=bool(_setting('rtmp', 'auto_broadcast')))


@app.route('/api/config/end-stream-after-print', methods=['GET', 'POST'])
def api_end_stream_after_print():
    if request.method == 'POST':
        enabled = _bool_param('enabled')
        if enabled is None:
            return _fail('enabled required')
        _persist('rtmp', end_after_print=enabled)
        logger.info('End stream after print: %s', 'enabled' if enabled else 'disabled')
    return _ok(enabled=bool(_setting('rtmp', 'end_after_print')))


@app.route('/api/health/upstream')
def api_health_upstream():
    camera = source_proxy.probe()
    printer = {'configured': moonraker.configured, 'reachable': False}
    if moonraker.configured:
        try:
            printer['state'] = moonraker.telemetry().state
            printer['reachable'] = True
        except UpstreamUnavailable as e:
            printer['error'] = str(e)
    return _ok(camera=camera, moonraker=printer)


# ---------- Timelapses ----------

@app.route('/api/timelapses')
def api_timelapses():
    items = [info.to_dict() for info in timelapse_manager.status_all()]
    return _ok(timelapses=items, active=timelapse_manager.active_names())


@app.route('/api/timelapses/<name>/start', methods=['POST'])
def api_timelapse_start(name):
    body = request.get_json(silent=True) or {}
    filename = body.get('filename') if isinstance(body, dict) else None
    started = timelapse_manager.start(name, filename or None)
    if started is None:
        return _fail(f'timelapse {name} could not be started', 409)
    return _ok(name=started)


@app.route('/api/timelapses/<name>/stop', methods=['POST'])
def api_timelapse_stop(name):
    if not timelapse_manager.is_active(name):
        return _fail(f'timelapse {name} is not active', 404)
    video = timelapse_manager.stop(name)
    return _ok(name=name, video=os.path.basename(video) if video else None)


@app.route('/api/timelapses/<name>/frames')
def api_timelapse_frames(name):
    frames = timelapse_manager.frames(name)
    return _ok(name=name, count=len(frames), frames=[
        {'filename': f, 'url': f'/api/timelapses/{name}/frames/{f}'} for f in frames
    ])


@app.route('/api/timelapses/<name>/frames/<filename>', methods=['GET'])
def api_timelapse_frame(name, filename):
    path = timelapse_manager.resolve_file(name, filename)
    mimetype = 'video/mp4' if path.lower().endswith('.mp4') else 'image/jpeg'
    return send_file(path, mimetype=mimetype, conditional=True)


@app.route('/api/timelapses/<name>/frames/<filename>', methods=['DELETE'])
def api_timelapse_frame_delete(name, filename):
    remaining = timelapse_manager.delete_frame(name, filename)
    return _ok(name=name, frame_count=remaining)


@app.route('/api/timelapses/<name>/generate', methods=['POST'])
def api_timelapse_generate(name):
    if not timelapse_manager.frames(name):
        return _fail('no frames to encode')
    if timelapse_manager.is_active(name):
        raise SessionActive(f'timelapse {name} is recording')
    video = timelapse_manager.generate_video(name)
    if video is None:
        return _fail('video encoding failed', 500)
    return _ok(name=name, video=os.path.basename(video))


@app.route('/api/timelapses/<name>/upload', methods=['POST'])
def api_timelapse_upload(name):
    timelapse_manager.session_path(name)
    url = (_param('url') or '').strip()
    if not url:
        return _fail('direct upload is not supported; POST {"url": ...} to record an existing upload', 501)
    timelapse_manager.set_youtube_url(name, url)
    return _ok(name=name, youtubeUrl=url)


@app.route('/api/timelapses/<name>/metadata')
def api_timelapse_metadata(name):
    return _ok(**timelapse_manager.read_metadata(name))


@app.route('/api/timelapses/<name>', methods=['DELETE'])
def api_timelapse_delete(name):
    timelapse_manager.delete_session(name)
    return _ok(name=name)


def main():
    global APP_PORT
    logger.info("Starting PrintStreamer...")
    try:
        preferred = int(os.environ.get('PRINTSTREAMER_PORT', str(APP_PORT or 8080)))
    except ValueError:
        preferred = 8080
    chosen = _find_available_port(preferred, attempts=10)
    # Update global APP_PORT so /status, mDNS and loopback consumers use the bound port
    APP_PORT = chosen
    _rebind_local_urls()
    logger.info("Binding HTTP server on port %d (preferred %d)", chosen, preferred)
    logger.info("Device ID: %s, Version: %s, mDNS: %s", str(DEVICE_ID), str(APP_VERSION),
                'ENABLED' if not MDNS_DISABLE else 'DISABLED')
    logger.info("Streams at http://0.0.0.0:%d/stream/{source,overlay,audio,mix}", chosen)
    _ensure_services_started()
    _start_mdns_advertiser()
    app.run(host='0.0.0.0', port=chosen, debug=False, threaded=True)


if __name__ == "__main__":
    main()
