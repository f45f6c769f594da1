import enum
import logging
import threading
import time
from typing import Callable, List, Optional

from helpers.encoder import EncoderProcess, ffmpeg_command
from helpers.errors import EncoderSpawnError, StreamerError

logger = logging.getLogger('printstreamer.rtmp')

BACKOFF_INITIAL = 0.5
BACKOFF_CAP = 10.0
# a publish that survives this long resets the reconnect budget
STABLE_AFTER = 30.0


class PublisherState(enum.Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    PUBLISHING = 'publishing'
    RECONNECTING = 'reconnecting'
    STOPPING = 'stopping'


def rtmp_target(ingest_url: str, stream_key: str) -> str:
    ingest_url = (ingest_url or '').strip()
    stream_key = (stream_key or '').strip()
    if not ingest_url:
        return ''
    if not stream_key:
        return ingest_url
    return f"{ingest_url.rstrip('/')}/{stream_key.lstrip('/')}"


def build_publish_args(target: str, source: str, mix_url: str, overlay_url: str, audio_url: str,
                       fps: int = 30, bitrate_kbps: int = 2500, audio_enabled: bool = True) -> List[str]:
    if source == 'mix':
        return ffmpeg_command(
            '-reconnect', '1', '-reconnect_streamed', '1', '-reconnect_delay_max', '2',
            '-i', mix_url,
            '-c:v', 'copy', '-c:a', 'aac', '-b:a', '128k', '-ar', '44100',
            '-f', 'flv', '-flvflags', 'no_duration_filesize', target,
        )
    fps = max(1, int(fps))
    kbps = max(200, int(bitrate_kbps))
    args = [
        '-reconnect', '1', '-reconnect_streamed', '1', '-reconnect_delay_max', '2',
        '-fflags', '+genpts', '-f', 'mjpeg', '-use_wallclock_as_timestamps', '1', '-i', overlay_url,
    ]
    if audio_enabled:
        args += ['-f', 'mp3', '-i', audio_url]
    else:
        args += ['-f', 'lavfi', '-i', 'anullsrc=channel_layout=stereo:sample_rate=44100']
    args += [
        '-map', '0:v:0', '-map', '1:a:0',
        '-c:v', 'libx264', '-preset', 'veryfast', '-tune', 'zerolatency', '-profile:v', 'baseline',
        '-pix_fmt', 'yuv420p', '-r', str(fps), '-g', str(fps * 2),
        '-b:v', f'{kbps}k', '-maxrate', f'{kbps}k', '-bufsize', f'{kbps * 2}k',
        '-c:a', 'aac', '-b:a', '128k', '-ar', '44100',
        '-f', 'flv', '-flvflags', 'no_duration_filesize', target,
    ]
    return ffmpeg_command(*args)


class RtmpPublisher:
    """Long-running encoder that pushes the mix to an RTMP ingest.

    IDLE -> STARTING -> PUBLISHING -> STOPPING -> IDLE, with RECONNECTING while
    waiting out the backoff after an unexpected encoder exit.
    """

    def __init__(self, args_factory: Callable[[str], List[str]], ingest_url: str = '', stream_key: str = '',
                 max_attempts: int = 6, spawn: Callable[..., EncoderProcess] = EncoderProcess.spawn,
                 backoff_initial: float = BACKOFF_INITIAL, backoff_cap: float = BACKOFF_CAP):
        self._args_factory = args_factory
        self.ingest_url = ingest_url
        self.stream_key = stream_key
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_initial = backoff_initial
        self.backoff_cap = backoff_cap
        self._spawn = spawn
        self._lock = threading.Lock()
        self._state = PublisherState.IDLE
        self._proc: Optional[EncoderProcess] = None
        self._cancel = threading.Event()
        self._th: Optional[threading.Thread] = None
        self.attempts = 0
        self.last_error: Optional[str] = None
        self.started_at: Optional[float] = None
        self._end_after_song = False

    @property
    def state(self) -> PublisherState:
        with self._lock:
            return self._state

    def _set_state(self, state: PublisherState) -> None:
        with self._lock:
            if self._state != state:
                logger.info('RTMP publisher: %s -> %s', self._state.value, state.value)
            self._state = state

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_initial * (2 ** max(0, attempt - 1)), self.backoff_cap)

    def start(self, ingest_url: str | None = None, stream_key: str | None = None) -> None:
        with self._lock:
            if self._state != PublisherState.IDLE:
                raise StreamerError(f'publisher is {self._state.value}')
            if ingest_url:
                self.ingest_url = ingest_url
            if stream_key:
                self.stream_key = stream_key
            target = rtmp_target(self.ingest_url, self.stream_key)
            if not target:
                raise StreamerError('no RTMP url configured')
            self._state = PublisherState.STARTING
            self._cancel.clear()
            self.attempts = 0
            self.last_error = None
            self.started_at = time.time()
        self._th = threading.Thread(target=self._run, args=(target,), name='RtmpPublisher', daemon=True)
        self._th.start()

    def stop(self, timeout: float = 10.0) -> None:
        with self._lock:
            if self._state == PublisherState.IDLE:
                return
            self._state = PublisherState.STOPPING
            proc = self._proc
        self._cancel.set()
        if proc is not None:
            proc.stop(grace=5.0)
        if self._th is not None and self._th is not threading.current_thread():
            self._th.join(timeout=timeout)
        self._set_state(PublisherState.IDLE)

    def status(self) -> dict:
        with self._lock:
            proc = self._proc
            return {
                'state': self._state.value,
                'target': rtmp_target(self.ingest_url, '***' if self.stream_key else ''),
                'encoder_pid': proc.pid if proc is not None and proc.running else None,
                'attempts': self.attempts,
                'max_attempts': self.max_attempts,
                'last_error': self.last_error,
                'started_at': self.started_at,
                'end_after_song': self._end_after_song,
            }

    @property
    def end_after_song(self) -> bool:
        with self._lock:
            return self._end_after_song

    def set_end_after_song(self, enabled: bool) -> bool:
        with self._lock:
            self._end_after_song = bool(enabled)
        logger.info('End live publish after current track: %s', 'enabled' if enabled else 'disabled')
        return bool(enabled)

    def on_track_finished(self) -> bool:
        """Audio track ended on its own. Returns True when that ends the live publish.

        The flag is one-shot: it clears on the first natural track end either way.
        """
        with self._lock:
            armed = self._end_after_song
            self._end_after_song = False
            live = self._state != PublisherState.IDLE
        if not armed or not live:
            return False
        logger.info('Track finished; ending live publish as requested')
        # stop() joins the publisher thread; keep the audio thread moving meanwhile
        threading.Thread(target=self.stop, name='RtmpEndAfterSong', daemon=True).start()
        return True

    def _run(self, target: str) -> None:
        while not self._cancel.is_set():
            began = time.monotonic()
            try:
                proc = self._spawn(self._args_factory(target), name='rtmp')
            except EncoderSpawnError as e:
                proc = None
                self.last_error = str(e)
                logger.error('RTMP encoder failed to start: %s', e)
            if proc is not None:
                with self._lock:
                    if self._cancel.is_set():
                        self._proc = None
                        proc.kill_tree()
                        break
                    self._proc = proc
                    self._state = PublisherState.PUBLISHING
                # drain stdout so the pipe never fills; flv goes to the network, not to us
                for _ in proc.iter_chunks():
                    pass
                code = proc.wait(5.0)
                with self._lock:
                    self._proc = None
                if self._cancel.is_set():
                    break
                if time.monotonic() - began > STABLE_AFTER:
                    self.attempts = 0
                self.last_error = f'encoder exited with code {code}'
            self.attempts += 1
            if self.attempts > self.max_attempts:
                logger.error('RTMP publisher gave up after %d attempts (%s)', self.max_attempts, self.last_error)
                break
            delay = self.backoff(self.attempts)
            self._set_state(PublisherState.RECONNECTING)
            logger.warning('RTMP encoder down (%s); reconnect %d/%d in %.1fs',
                           self.last_error, self.attempts, self.max_attempts, delay)
            if self._cancel.wait(delay):
                break
            self._set_state(PublisherState.STARTING)
        with self._lock:
            if self._state != PublisherState.STOPPING:
                self._state = PublisherState.IDLE
