import logging
import os
import re
import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from helpers.encoder import ffmpeg_command, run_encoder
from helpers.errors import SessionActive, StreamerError, TimelapseError, TimelapseNotFound
from helpers.session_registry import SessionRegistry

logger = logging.getLogger('printstreamer.timelapse')

FRAME_RE = re.compile(r'^frame_(\d+)\.jpg$', re.IGNORECASE)
METADATA_FILE = '.metadata'
METADATA_ALTERNATES = ('.metadata', 'metadata', '.metadata.txt', '.meta')
_UNSAFE_CHARS = re.compile(r'[\x00-\x1f<>:"/\\|?*\s\-()\[\]{};,.#]')
_URL_LINE = re.compile(r'^https?://', re.IGNORECASE)


def sanitize_name(name: str | None) -> str:
    """Folder-safe session name derived from a job filename or label."""
    if not name or not name.strip():
        return 'unknown'
    stem = os.path.splitext(os.path.basename(name.strip().replace('\\', '/')))[0]
    result = stem.replace('&', 'and')
    result = _UNSAFE_CHARS.sub('_', result)
    result = re.sub(r'_+', '_', result).strip('_')
    return result or 'unknown'


def frame_index(filename: str) -> Optional[int]:
    m = FRAME_RE.match(filename)
    return int(m.group(1)) if m else None


def list_frames(folder: str) -> List[str]:
    """Frame filenames in `folder`, ordered by index."""
    try:
        names = os.listdir(folder)
    except OSError:
        return []
    frames = [(frame_index(n), n) for n in names]
    return [n for idx, n in sorted((f for f in frames if f[0] is not None), key=lambda f: f[0])]


def list_videos(folder: str) -> List[str]:
    try:
        return sorted(n for n in os.listdir(folder) if n.lower().endswith('.mp4'))
    except OSError:
        return []


def parse_metadata(text: str) -> Dict[str, str]:
    """`Key=Value` / `Key: Value` lines, keys lower-cased; a bare youtube link becomes `youtubeurl`."""
    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if _URL_LINE.match(line):
            if 'youtube' in line.lower() or 'youtu.be' in line.lower():
                values['youtubeurl'] = line
            continue
        sep = line.find('=')
        if sep < 0:
            sep = line.find(':')
        if sep <= 0:
            continue
        values[line[:sep].strip().lower()] = line[sep + 1:].strip()
    return values


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace('+00:00', 'Z')


@dataclass
class TimelapseInfo:
    name: str
    path: str
    is_active: bool
    is_paused: bool
    frame_count: int
    video_files: List[str] = field(default_factory=list)
    start_time: Optional[float] = None
    last_frame_time: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'path': self.path,
            'isActive': self.is_active,
            'isPaused': self.is_paused,
            'frameCount': self.frame_count,
            'videoFiles': list(self.video_files),
            'startTime': _iso(self.start_time),
            'lastFrameTime': _iso(self.last_frame_time),
        }


class TimelapseSession:
    def __init__(self, name: str, output_dir: str, start_after_layer_1: bool = True,
                 frame_count: int = 0, moonraker_filename: str | None = None):
        self.name = name
        self.output_dir = output_dir
        self.start_time = time.time()
        self.frame_count = frame_count
        self.last_capture_time: Optional[float] = None
        self.start_after_layer_1 = start_after_layer_1
        self.capture_enabled = not start_after_layer_1
        self.is_paused = False
        self.is_stopped = False
        self.logged_waiting = False
        self.moonraker_filename = moonraker_filename
        self.total_layers_hint: Optional[int] = None
        self.slicer: Optional[str] = None
        self.estimated_seconds: Optional[float] = None
        self.filament_total_mm: Optional[float] = None
        self.raw_metadata: Optional[dict] = None
        self._frame_lock = threading.Lock()

    def apply_file_metadata(self, meta: dict | None) -> None:
        if not meta:
            return
        self.raw_metadata = meta
        self.slicer = meta.get('slicer') or self.slicer
        try:
            if meta.get('estimated_time') is not None:
                self.estimated_seconds = float(meta['estimated_time'])
            if meta.get('layer_count') is not None:
                self.total_layers_hint = int(meta['layer_count'])
            if meta.get('filament_total') is not None:
                self.filament_total_mm = float(meta['filament_total'])
        except (TypeError, ValueError):
            logger.debug('Ignoring malformed file metadata for %s', self.name)

    def stop(self) -> None:
        # waits for an in-flight write, so nothing lands after this returns
        with self._frame_lock:
            self.is_stopped = True

    def write_frame(self, data: bytes) -> Optional[str]:
        with self._frame_lock:
            if self.is_stopped:
                return None
            path = os.path.join(self.output_dir, f'frame_{self.frame_count:06d}.jpg')
            try:
                with open(path, 'wb') as f:
                    f.write(data)
            except OSError as e:
                logger.warning('Dropping frame for %s: %s', self.name, e)
                return None
            self.frame_count += 1
            self.last_capture_time = time.time()
            return path


class TimelapseManager:
    """Owns timelapse folders under `main_folder` and the active capture sessions.

    A single scheduler thread samples one frame per active session every
    `period_seconds`; it runs only while at least one session is registered.
    """

    def __init__(self, main_folder: str, settings: dict | None = None,
                 capture_fn: Callable[[], bytes] | None = None,
                 metadata_fn: Callable[[str], dict | None] | None = None,
                 run_encoder: Callable[..., Optional[int]] = run_encoder):
        settings = settings or {}
        self.main_folder = os.path.abspath(main_folder)
        self.period_seconds = max(1.0, float(settings.get('period_seconds', 60)))
        self.start_after_layer1 = bool(settings.get('start_after_layer1', True))
        self.last_layer_offset = max(0, int(settings.get('last_layer_offset', 1)))
        self.auto_finalize = bool(settings.get('auto_finalize', True))
        self.verbose_logs = bool(settings.get('verbose_logs', False))
        self.fps = int(settings.get('fps', 30))
        self.freeze_seconds = float(settings.get('freeze_seconds', 5))
        self.encode_timeout = float(settings.get('encode_timeout', 1800))
        self._capture_fn = capture_fn
        self._metadata_fn = metadata_fn
        self._run_encoder = run_encoder
        self._sessions: SessionRegistry[TimelapseSession] = SessionRegistry()
        self._start_lock = threading.Lock()
        self._sched_lock = threading.Lock()
        self._sched_stop = threading.Event()
        self._scheduler: Optional[threading.Thread] = None
        os.makedirs(self.main_folder, exist_ok=True)

    def _vlog(self, msg: str, *args) -> None:
        if self.verbose_logs:
            logger.info(msg, *args)

    # ---- sessions ----

    def get_session(self, name: str) -> Optional[TimelapseSession]:
        return self._sessions.try_get(name)

    def active_names(self) -> List[str]:
        return self._sessions.keys()

    def is_active(self, name: str) -> bool:
        return name in self._sessions

    def start(self, label: str, job_filename: str | None = None) -> Optional[str]:
        if not (label or '').strip() and not job_filename:
            return None
        base = sanitize_name(job_filename or label)
        file_meta = None
        if job_filename and self._metadata_fn is not None:
            try:
                file_meta = self._metadata_fn(job_filename)
            except StreamerError as e:
                logger.warning('No file metadata for %s: %s', job_filename, e)

        with self._start_lock:
            folder = self._find_resumable(base, job_filename)
            resumed = folder is not None
            if folder is None:
                folder = self._new_folder(base)
            path = os.path.join(self.main_folder, folder)
            os.makedirs(path, exist_ok=True)
            session = TimelapseSession(
                folder, path,
                start_after_layer_1=self.start_after_layer1,
                frame_count=len(list_frames(path)) if resumed else 0,
                moonraker_filename=job_filename,
            )
            session.apply_file_metadata(file_meta)
            if not self._sessions.try_add(folder, session):
                logger.warning('Timelapse %s is already active', folder)
                return None
            self._write_session_metadata(path, folder, job_filename)
            self._arm()

        if resumed:
            logger.info('Resumed timelapse %s at frame %d', folder, session.frame_count)
        else:
            logger.info('Started timelapse %s in %s', folder, path)
        if session.start_after_layer_1:
            logger.info('Timelapse %s: frames start at layer 1', folder)
        else:
            self.capture_frame(session)
        return folder

    def _find_resumable(self, base: str, job_filename: str | None) -> Optional[str]:
        rx = re.compile(rf'^{re.escape(base)}(?:_(\d+))?$', re.IGNORECASE)
        try:
            entries = [e for e in os.scandir(self.main_folder) if e.is_dir() and rx.match(e.name)]
        except OSError:
            return None
        entries.sort(key=lambda e: e.stat().st_ctime, reverse=True)
        for entry in entries:
            if not list_frames(entry.path) or list_videos(entry.path):
                continue
            meta_path = os.path.join(entry.path, METADATA_FILE)
            if not os.path.isfile(meta_path):
                if entry.name.lower() == base.lower():
                    return entry.name
                continue
            try:
                with open(meta_path, 'r', encoding='utf-8') as f:
                    meta = parse_metadata(f.read())
            except OSError:
                continue
            if job_filename:
                if meta.get('moonraker_filename', '').lower() == job_filename.lower():
                    return entry.name
            elif meta.get('session_name', '').lower() == base.lower():
                return entry.name
        return None

    def _new_folder(self, base: str) -> str:
        if not os.path.exists(os.path.join(self.main_folder, base)):
            return base
        rx = re.compile(rf'^{re.escape(base)}(?:_(\d+))?$')
        highest = 0
        for name in os.listdir(self.main_folder):
            m = rx.match(name)
            if m and m.group(1):
                highest = max(highest, int(m.group(1)))
        return f'{base}_{highest + 1}'

    def _write_session_metadata(self, path: str, name: str, job_filename: str | None) -> None:
        existing = self._read_metadata_file(path) or {}
        values = {
            'CreatedAt': existing.get('createdat') or _iso(time.time()),
            'session_name': name,
        }
        if job_filename:
            values['moonraker_filename'] = job_filename
        if existing.get('youtubeurl'):
            values['YouTubeUrl'] = existing['youtubeurl']
        self._write_metadata_file(path, values)

    def stop(self, name: str) -> Optional[str]:
        session = self._sessions.try_get(name)
        if session is None:
            logger.warning('Cannot stop timelapse %s: not active', name)
            return None
        session.stop()
        with self._start_lock:
            removed = self._sessions.try_remove(name)
            if len(self._sessions) == 0:
                self._disarm()
        if removed is None:
            return None
        logger.info('Stopped timelapse %s after %d frames', name, session.frame_count)
        return self.generate_video(name)

    def stop_all(self) -> None:
        for name in self._sessions.keys():
            self.stop(name)

    def notify_print_progress(self, name: str | None, current_layer: int | None,
                              total_layers: int | None) -> Optional[str]:
        """Feed layer progress; returns the video path when the last layer finalizes the session."""
        if not name:
            return None
        session = self._sessions.try_get(name)
        if session is None:
            return None
        if session.start_after_layer_1 and not session.capture_enabled:
            if current_layer is not None and current_layer >= 1:
                session.capture_enabled = True
                session.logged_waiting = False
                logger.info('Timelapse %s: capture enabled at layer %d', name, current_layer)
            elif not session.logged_waiting:
                session.logged_waiting = True
                logger.info('Timelapse %s: waiting for layer 1 (current: %s)', name,
                            current_layer if current_layer is not None else 'n/a')
        if current_layer is None or not total_layers or total_layers <= 0:
            return None
        if current_layer < max(0, total_layers - self.last_layer_offset):
            return None
        logger.info('Timelapse %s reached layer %d/%d (offset=%d)', name, current_layer, total_layers,
                    self.last_layer_offset)
        if self.auto_finalize:
            return self.stop(name)
        session.stop()
        self._vlog('Timelapse %s marked stopped; finalize left to caller', name)
        return None

    def notify_printer_state(self, name: str | None, state: str | None) -> None:
        if not name:
            return
        session = self._sessions.try_get(name)
        if session is None:
            return
        paused = (state or '').strip().lower() == 'paused'
        if paused != session.is_paused:
            logger.info('Timelapse %s %s', name, 'paused' if paused else 'resumed')
        session.is_paused = paused

    def find_session_for_filename(self, filename: str | None) -> Optional[TimelapseSession]:
        if not filename:
            return None
        wanted = sanitize_name(filename)
        exact = self._sessions.try_get(wanted)
        if exact is not None:
            return exact
        for name, session in self._sessions.snapshot().items():
            if wanted.lower() in name.lower():
                logger.warning('No exact timelapse for %s; using %s', filename, name)
                return session
        return None

    # ---- capture ----

    def _arm(self) -> None:
        with self._sched_lock:
            if self._scheduler is not None and self._scheduler.is_alive() and not self._sched_stop.is_set():
                return
            self._sched_stop = threading.Event()
            self._scheduler = threading.Thread(target=self._schedule, args=(self._sched_stop,),
                                               name='TimelapseScheduler', daemon=True)
            self._scheduler.start()
        logger.info('Timelapse scheduler armed (every %.0fs)', self.period_seconds)

    def _disarm(self) -> None:
        with self._sched_lock:
            if self._sched_stop.is_set():
                return
            self._sched_stop.set()
        logger.info('Timelapse scheduler disarmed')

    def stop_scheduler(self) -> None:
        self._disarm()

    @property
    def scheduler_running(self) -> bool:
        with self._sched_lock:
            return self._scheduler is not None and self._scheduler.is_alive() and not self._sched_stop.is_set()

    def _schedule(self, stop_evt: threading.Event) -> None:
        delay = self.period_seconds
        while not stop_evt.wait(delay):
            began = time.monotonic()
            try:
                self.capture_tick()
            except Exception:
                logger.exception('Timelapse tick failed')
            # an overrunning tick is followed at once, never overlapped
            delay = max(0.0, self.period_seconds - (time.monotonic() - began))

    def capture_tick(self) -> int:
        """Capture one frame for every eligible session. Returns the number written."""
        written = 0
        sessions = self._sessions.snapshot_values()
        self._vlog('Timelapse tick: %d active session(s)', len(sessions))
        for session in sessions:
            if self.capture_frame(session):
                written += 1
        return written

    def _gate(self, session: TimelapseSession) -> Optional[str]:
        if session.is_stopped:
            return 'stopped'
        if session.start_after_layer_1 and not session.capture_enabled:
            return 'waiting for layer 1'
        if session.is_paused:
            return 'paused'
        return None

    def capture_frame(self, session: TimelapseSession) -> Optional[str]:
        reason = self._gate(session)
        if reason:
            self._vlog('Timelapse %s: skipping capture (%s)', session.name, reason)
            return None
        if self._capture_fn is None:
            return None
        try:
            data = self._capture_fn()
        except StreamerError as e:
            logger.warning('Timelapse %s: capture failed: %s', session.name, e)
            return None
        if not data:
            return None
        path = session.write_frame(data)
        if path:
            self._vlog('Timelapse %s: wrote %s (%d bytes)', session.name, os.path.basename(path), len(data))
        return path

    # ---- folders on disk ----

    def session_path(self, name: str) -> str:
        if not name or name in ('.', '..') or os.sep in name or '/' in name or '\\' in name:
            raise TimelapseNotFound(f'timelapse {name!r} not found')
        path = os.path.join(self.main_folder, name)
        if not os.path.isdir(path):
            raise TimelapseNotFound(f'timelapse {name!r} not found')
        return path

    def status_all(self) -> List[TimelapseInfo]:
        infos = []
        try:
            entries = [e for e in os.scandir(self.main_folder) if e.is_dir()]
        except OSError:
            return infos
        for entry in entries:
            session = self._sessions.try_get(entry.name)
            frames = list_frames(entry.path)
            last_frame = None
            if frames:
                try:
                    last_frame = os.path.getmtime(os.path.join(entry.path, frames[-1]))
                except OSError:
                    last_frame = None
            infos.append(TimelapseInfo(
                name=entry.name,
                path=entry.path,
                is_active=session is not None,
                is_paused=bool(session and session.is_paused),
                frame_count=len(frames),
                video_files=list_videos(entry.path),
                start_time=session.start_time if session else entry.stat().st_ctime,
                last_frame_time=last_frame,
            ))
        infos.sort(key=lambda i: i.start_time or 0, reverse=True)
        return infos

    def frames(self, name: str) -> List[str]:
        return list_frames(self.session_path(name))

    def resolve_file(self, name: str, filename: str) -> str:
        """Absolute path of a frame or video inside a session folder."""
        folder = self.session_path(name)
        lower = (filename or '').lower()
        if not (lower.endswith('.jpg') or lower.endswith('.mp4')):
            raise TimelapseError('only .jpg and .mp4 files are served')
        path = os.path.realpath(os.path.join(folder, filename))
        if os.path.dirname(path) != os.path.realpath(folder) or not os.path.isfile(path):
            raise TimelapseNotFound(f'{filename} not found')
        return path

    def delete_frame(self, name: str, filename: str) -> int:
        """Delete one frame and renumber the rest without gaps. Returns the remaining count."""
        folder = self.session_path(name)
        if not filename or '/' in filename or '\\' in filename or not filename.lower().endswith('.jpg'):
            raise TimelapseError('invalid frame name')
        # holding the start lock keeps a resume from counting frames mid-renumber
        with self._start_lock:
            if name in self._sessions:
                raise SessionActive(f'timelapse {name} is recording')
            path = os.path.join(folder, filename)
            if not os.path.isfile(path):
                raise TimelapseNotFound(f'{filename} not found')
            os.remove(path)
            remaining = list_frames(folder)
            for i, old in enumerate(remaining):
                new = f'frame_{i:06d}.jpg'
                if old != new:
                    os.replace(os.path.join(folder, old), os.path.join(folder, new))
        logger.info('Deleted %s from %s; %d frames remain', filename, name, len(remaining))
        return len(remaining)

    def delete_session(self, name: str) -> None:
        folder = self.session_path(name)
        if name in self._sessions:
            raise SessionActive(f'timelapse {name} is recording')
        shutil.rmtree(folder)
        logger.info('Deleted timelapse %s', name)

    # ---- video ----

    def _primary_args(self, folder: str, video: str) -> List[str]:
        return ffmpeg_command(
            '-y', '-framerate', str(self.fps), '-start_number', '0',
            '-i', os.path.join(folder, 'frame_%06d.jpg'),
            '-vf', f'tpad=stop_mode=clone:stop_duration={self.freeze_seconds:g}',
            '-c:v', 'libx264', '-preset', 'medium', '-crf', '18', '-pix_fmt', 'yuv420p',
            '-movflags', '+faststart', video,
        )

    def _fallback_args(self, folder: str, video: str) -> List[str]:
        return ffmpeg_command(
            '-y', '-r', str(self.fps), '-pattern_type', 'glob',
            '-i', os.path.join(folder, 'frame_*.jpg'),
            '-c:v', 'libx264', '-pix_fmt', 'yuv420p', video,
        )

    def generate_video(self, name: str) -> Optional[str]:
        """Encode `<name>.mp4` from the session's frames. None when there is nothing to encode or both attempts fail."""
        folder = os.path.join(self.main_folder, name)
        frames = list_frames(folder)
        if not frames:
            logger.info('Timelapse %s has no frames; no video created', name)
            return None
        video = os.path.join(folder, f'{name}.mp4')
        logger.info('Encoding %d frames into %s', len(frames), video)
        for label, args in (('primary', self._primary_args(folder, video)),
                            ('fallback', self._fallback_args(folder, video))):
            try:
                code = self._run_encoder(args, name=f'timelapse-{label}', timeout=self.encode_timeout)
            except StreamerError as e:
                logger.error('Timelapse encoder (%s) failed to start: %s', label, e)
                continue
            if code == 0 and os.path.isfile(video):
                logger.info('Created timelapse video %s', video)
                return video
            logger.error('Timelapse encoder (%s) exited with code %s', label, code)
        logger.error('Could not create video for %s; frames kept', name)
        return None

    # ---- metadata ----

    def _read_metadata_file(self, folder: str) -> Optional[Dict[str, str]]:
        for candidate in METADATA_ALTERNATES:
            path = os.path.join(folder, candidate)
            if os.path.isfile(path):
                with open(path, 'r', encoding='utf-8', errors='replace') as f:
                    return parse_metadata(f.read())
        return None

    def _write_metadata_file(self, folder: str, values: Dict[str, str]) -> None:
        path = os.path.join(folder, METADATA_FILE)
        tmp = path + '.tmp'
        try:
            with open(tmp, 'w', encoding='utf-8') as f:
                for key, value in values.items():
                    f.write(f'{key}={value}\n')
            os.replace(tmp, path)
        except OSError as e:
            logger.warning('Could not write %s: %s', path, e)

    def read_metadata(self, name: str) -> dict:
        folder = self.session_path(name)
        values = self._read_metadata_file(folder) or {}
        youtube = values.get('youtubeurl')
        if youtube is None:
            youtube = next((v for k, v in values.items() if 'youtube' in k), None)
        return {
            'youtubeUrl': youtube,
            'createdAt': values.get('createdat'),
            'sessionName': values.get('session_name'),
            'moonrakerFilename': values.get('moonraker_filename'),
        }

    def set_youtube_url(self, name: str, url: str) -> None:
        folder = self.session_path(name)
        existing = self._read_metadata_file(folder) or {}
        values = {
            'CreatedAt': existing.get('createdat') or _iso(time.time()),
            'session_name': existing.get('session_name') or name,
        }
        if existing.get('moonraker_filename'):
            values['moonraker_filename'] = existing['moonraker_filename']
        values['YouTubeUrl'] = url
        self._write_metadata_file(folder, values)
        logger.info('Recorded upload URL for %s', name)
