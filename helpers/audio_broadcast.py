import logging
import queue
import threading
import time
import weakref
from collections import deque
from typing import Callable, Iterator, List, Optional

from helpers.audio_program import ENABLED_CHANGED, INTERRUPT_REQUESTED, AudioProgram
from helpers.encoder import EncoderProcess, ffmpeg_command
from helpers.errors import EncoderSpawnError

logger = logging.getLogger('printstreamer.audio.broadcast')

CHUNK_SIZE = 16 * 1024
SUBSCRIBER_CAPACITY = 64


class Subscriber:
    """Bounded FIFO of MP3 chunks for one listener.

    offer() never blocks: when full, the oldest chunk is dropped to make room.
    """

    def __init__(self, capacity: int = SUBSCRIBER_CAPACITY):
        self.capacity = int(capacity)
        self._chunks: deque = deque(maxlen=self.capacity)
        self._cv = threading.Condition()
        self._closed = False
        self.dropped = 0
        self.received = 0

    def offer(self, chunk: bytes) -> bool:
        with self._cv:
            if self._closed:
                return False
            if len(self._chunks) == self.capacity:
                self.dropped += 1
            self._chunks.append(chunk)
            self.received += 1
            self._cv.notify()
            return True

    def get(self, timeout: float = 1.0) -> Optional[bytes]:
        with self._cv:
            if not self._chunks and not self._closed:
                self._cv.wait(timeout=timeout)
            if self._chunks:
                return self._chunks.popleft()
            return None

    def close(self) -> None:
        with self._cv:
            self._closed = True
            self._cv.notify_all()

    @property
    def closed(self) -> bool:
        with self._cv:
            return self._closed

    def __len__(self) -> int:
        with self._cv:
            return len(self._chunks)


def track_args(path: str, bitrate: str = '192k', sample_rate: int = 44100) -> List[str]:
    return ffmpeg_command('-re', '-i', path, '-vn', '-ac', '2', '-ar', str(sample_rate),
                          '-f', 'mp3', '-b:a', bitrate, 'pipe:1')


def silence_args(bitrate: str = '192k', sample_rate: int = 44100) -> List[str]:
    return ffmpeg_command('-re', '-f', 'lavfi', '-i', f'anullsrc=channel_layout=stereo:sample_rate={sample_rate}',
                          '-f', 'mp3', '-b:a', bitrate, 'pipe:1')


class AudioBroadcaster:
    """One MP3 encoder shared by every /stream/audio listener.

    The encoder plays the program's current track, or silence when the program is
    disabled, paused or empty. Subscribers are held by weak reference: the HTTP
    handler that created one owns it.
    """

    def __init__(self, program: AudioProgram, spawn: Callable[..., EncoderProcess] = EncoderProcess.spawn,
                 bitrate: str = '192k', sample_rate: int = 44100, chunk_size: int = CHUNK_SIZE,
                 capacity: int = SUBSCRIBER_CAPACITY, backoff_initial: float = 0.5, backoff_cap: float = 5.0,
                 on_track_finished: Callable[[], object] | None = None):
        self.program = program
        self.on_track_finished = on_track_finished
        self.bitrate = bitrate
        self.sample_rate = int(sample_rate)
        self.chunk_size = int(chunk_size)
        self.capacity = int(capacity)
        self.backoff_initial = backoff_initial
        self.backoff_cap = backoff_cap
        self._spawn = spawn
        self._subscribers: 'weakref.WeakSet[Subscriber]' = weakref.WeakSet()
        self._sub_lock = threading.Lock()
        self._lock = threading.Lock()
        self._proc: Optional[EncoderProcess] = None
        self._encoding: Optional[str] = None
        self._interrupted = threading.Event()
        self._wake = threading.Event()
        self._running = False
        self._th: Optional[threading.Thread] = None
        self._events_th: Optional[threading.Thread] = None
        self._events: Optional[queue.Queue] = None
        self.bytes_published = 0
        self.restarts = 0
        self.last_restart: Optional[float] = None
        self.started_at: Optional[float] = None

    # ---- lifecycle ----

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._wake.clear()
            self.started_at = time.time()
        self._events = self.program.listen()
        self._th = threading.Thread(target=self._run, name='AudioBroadcaster', daemon=True)
        self._th.start()
        self._events_th = threading.Thread(target=self._watch_events, name='AudioBroadcasterEvents', daemon=True)
        self._events_th.start()
        logger.info('Audio broadcaster started')

    def stop(self) -> None:
        with self._lock:
            self._running = False
            proc = self._proc
        self._wake.set()
        if proc is not None:
            proc.kill_tree()
        if self._events is not None:
            self.program.unlisten(self._events)
        with self._sub_lock:
            subs = list(self._subscribers)
        for sub in subs:
            sub.close()
        if self._th is not None:
            self._th.join(timeout=5)

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    # ---- subscribers ----

    def subscribe(self) -> Subscriber:
        sub = Subscriber(self.capacity)
        with self._sub_lock:
            self._subscribers.add(sub)
            count = len(self._subscribers)
        logger.info('Audio subscriber joined (%d total)', count)
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        sub.close()
        with self._sub_lock:
            self._subscribers.discard(sub)
            count = len(self._subscribers)
        logger.info('Audio subscriber left (%d remaining, %d chunks dropped)', count, sub.dropped)

    def subscriber_count(self) -> int:
        with self._sub_lock:
            return len(self._subscribers)

    def stream(self, keepalive: float = 1.0) -> Iterator[bytes]:
        """Chunks for one HTTP listener; ends when the generator is closed or the broadcaster stops."""
        sub = self.subscribe()
        try:
            while True:
                chunk = sub.get(timeout=keepalive)
                if chunk is not None:
                    yield chunk
                elif sub.closed:
                    break
        finally:
            self.unsubscribe(sub)

    def publish(self, chunk: bytes) -> None:
        with self._sub_lock:
            subs = list(self._subscribers)
        for sub in subs:
            sub.offer(chunk)
        self.bytes_published += len(chunk)

    # ---- control ----

    def interrupt_encoder(self) -> None:
        """Kill the running encoder; the supervisor loop respawns for the current selection."""
        with self._lock:
            self._interrupted.set()
            proc = self._proc
        if proc is not None:
            logger.info('Interrupting audio encoder pid=%d', proc.pid)
            proc.kill_tree()

    def apply_enabled_state(self, enabled: bool) -> bool:
        return self.program.set_enabled(enabled)

    def status(self) -> dict:
        with self._lock:
            proc = self._proc
            encoding = self._encoding
            running = self._running
        current = self.program.current()
        return {
            'running': running,
            'encoder_pid': proc.pid if proc is not None and proc.running else None,
            'source': encoding or 'silence',
            'enabled': self.program.enabled,
            'is_playing': self.program.is_playing,
            'current': current.name if current else None,
            'subscribers': self.subscriber_count(),
            'bytes_published': self.bytes_published,
            'restarts': self.restarts,
            'last_restart': self.last_restart,
        }

    # ---- internals ----

    def _args_for(self, path: Optional[str]) -> List[str]:
        if path:
            return track_args(path, self.bitrate, self.sample_rate)
        return silence_args(self.bitrate, self.sample_rate)

    def _watch_events(self) -> None:
        q = self._events
        while self.running and q is not None:
            try:
                event = q.get(timeout=1.0)
            except queue.Empty:
                continue
            pending = [event]
            # coalesce bursts (next() emits ended + started + interrupt)
            while True:
                try:
                    pending.append(q.get_nowait())
                except queue.Empty:
                    break
            if any(e.kind in (INTERRUPT_REQUESTED, ENABLED_CHANGED) for e in pending):
                self.interrupt_encoder()

    def _track_finished(self) -> None:
        hook = self.on_track_finished
        if hook is None:
            return
        try:
            hook()
        except Exception:
            logger.exception('Track finished hook failed')

    def _backoff(self, failures: int) -> float:
        return min(self.backoff_initial * (2 ** max(0, failures - 1)), self.backoff_cap)

    def _run(self) -> None:
        failures = 0
        while self.running:
            self._interrupted.clear()
            path = self.program.current_path()
            try:
                proc = self._spawn(self._args_for(path), name='audio')
            except EncoderSpawnError as e:
                failures += 1
                delay = self._backoff(failures)
                logger.error('Audio encoder failed to start: %s (retry in %.1fs)', e, delay)
                if self._wake.wait(delay):
                    break
                continue
            with self._lock:
                self._proc = proc
                self._encoding = path
            if self._interrupted.is_set():
                proc.kill_tree()

            produced = 0
            for chunk in proc.iter_chunks(self.chunk_size):
                produced += len(chunk)
                self.publish(chunk)
            code = proc.wait(5.0)
            with self._lock:
                self._proc = None
                self._encoding = None
            if not self.running:
                break
            if self._interrupted.is_set():
                failures = 0
                continue
            if code == 0:
                failures = 0
                if path:
                    logger.info('Track finished: %s', path)
                    self._track_finished()
                    self.program.advance()
                continue
            if path and produced == 0:
                logger.warning('Track %s could not be encoded (code=%s); skipping', path, code)
                self.program.fail_current()
            failures = 1 if produced else failures + 1
            delay = self._backoff(failures)
            self.restarts += 1
            self.last_restart = time.time()
            logger.warning('Audio encoder exited with code %s; restarting in %.1fs', code, delay)
            if self._wake.wait(delay):
                break
        logger.info('Audio broadcaster stopped')
