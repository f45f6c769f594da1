import logging
import os
import queue
import random
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger('printstreamer.audio')

SUPPORTED_EXTENSIONS = ('.mp3', '.wav', '.m4a', '.aac', '.flac', '.ogg', '.opus')
REPEAT_MODES = ('none', 'one', 'all')

TRACK_STARTED = 'track_started'
TRACK_ENDED = 'track_ended'
INTERRUPT_REQUESTED = 'interrupt_requested'
ENABLED_CHANGED = 'enabled_changed'


@dataclass(frozen=True)
class AudioTrack:
    name: str
    path: str
    format: str


@dataclass(frozen=True)
class AudioEvent:
    kind: str
    track: Optional[AudioTrack] = None
    reason: Optional[str] = None      # natural | skip | clear | error, for TRACK_ENDED
    enabled: Optional[bool] = None    # for ENABLED_CHANGED


class AudioProgram:
    """Playlist state for the broadcast: library, explicit queue, rotation and modes.

    Every mutation is published as an AudioEvent to each listener queue returned
    by listen(); the broadcaster consumes those to restart its encoder.
    """

    def __init__(self, folder: str, enabled: bool = True, rng: random.Random | None = None):
        self._folder = folder
        self._enabled = bool(enabled)
        self._rng = rng or random.Random()
        self._lock = threading.RLock()
        self._library: List[AudioTrack] = []
        self._queue: List[AudioTrack] = []
        self._history: List[AudioTrack] = []
        self._current: Optional[AudioTrack] = None
        self._cursor = -1
        self._played: set = set()
        self._playing = False
        self._shuffle = False
        self._repeat = 'none'
        self._listeners: List[queue.Queue] = []

    # ---- events ----

    def listen(self) -> queue.Queue:
        q: queue.Queue = queue.Queue()
        with self._lock:
            self._listeners.append(q)
        return q

    def unlisten(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._listeners:
                self._listeners.remove(q)

    def _emit(self, event: AudioEvent) -> None:
        for q in list(self._listeners):
            q.put_nowait(event)

    # ---- library ----

    @property
    def folder(self) -> str:
        with self._lock:
            return self._folder

    def set_folder(self, path: str) -> int:
        with self._lock:
            self._folder = path
        logger.info('Audio folder set to %s', path)
        return self.rescan()

    def rescan(self) -> int:
        """Reload the library from the folder (non-recursive). Returns the track count."""
        folder = self.folder
        tracks: Dict[str, AudioTrack] = {}
        try:
            entries = sorted(os.listdir(folder), key=str.lower)
        except OSError as e:
            logger.warning('Cannot scan audio folder %s: %s', folder, e)
            entries = []
        for entry in entries:
            path = os.path.join(folder, entry)
            stem, ext = os.path.splitext(entry)
            if ext.lower() not in SUPPORTED_EXTENSIONS or not os.path.isfile(path):
                continue
            if stem.lower() in tracks:
                logger.warning('Duplicate track name %s ignored (%s)', stem, entry)
                continue
            tracks[stem.lower()] = AudioTrack(stem, os.path.abspath(path), ext.lower().lstrip('.'))
        with self._lock:
            self._library = sorted(tracks.values(), key=lambda t: t.name.lower())
            names = {t.name.lower() for t in self._library}
            self._queue = [t for t in self._queue if t.name.lower() in names]
            self._played &= names
            self._cursor = -1
            if self._current is not None and self._current.name.lower() not in names:
                self._current = None
            count = len(self._library)
        logger.info('Audio library: %d tracks in %s', count, folder)
        return count

    def tracks(self) -> List[AudioTrack]:
        with self._lock:
            return list(self._library)

    def find(self, name: str) -> Optional[AudioTrack]:
        key = (name or '').strip().lower()
        with self._lock:
            for t in self._library:
                if t.name.lower() == key:
                    return t
        return None

    # ---- queue ----

    def enqueue(self, *names: str) -> List[str]:
        """Append tracks to the explicit queue. Returns the names actually added."""
        added = []
        with self._lock:
            for name in names:
                track = self.find(name)
                if track is None:
                    continue
                self._queue.append(track)
                added.append(track.name)
        return added

    def remove(self, *names: str) -> List[str]:
        """Drop the most recently queued copy of each name.

        A name with no queued copy that matches the current track skips to the next one.
        """
        removed = []
        skip_current = False
        with self._lock:
            for name in names:
                key = (name or '').strip().lower()
                for i in range(len(self._queue) - 1, -1, -1):
                    if self._queue[i].name.lower() == key:
                        removed.append(self._queue.pop(i).name)
                        break
                else:
                    if not skip_current and self._current is not None and self._current.name.lower() == key:
                        skip_current = True
                        removed.append(self._current.name)
        if skip_current:
            self.next()
        return removed

    def clear(self) -> None:
        with self._lock:
            self._queue.clear()
            current = self._current
            self._current = None
            self._playing = False
            self._played.clear()
            self._cursor = -1
            if current is not None:
                self._emit(AudioEvent(TRACK_ENDED, current, 'clear'))
            self._emit(AudioEvent(INTERRUPT_REQUESTED))

    # ---- transport ----

    def _start(self, track: Optional[AudioTrack], ended_reason: str) -> Optional[AudioTrack]:
        previous = self._current
        if previous is not None:
            self._emit(AudioEvent(TRACK_ENDED, previous, ended_reason))
            if previous != track:
                self._history.append(previous)
                del self._history[:-100]
        self._current = track
        if track is None:
            self._playing = False
            return None
        self._played.add(track.name.lower())
        self._emit(AudioEvent(TRACK_STARTED, track, ended_reason))
        return track

    def _pick_next(self, natural: bool) -> Optional[AudioTrack]:
        if natural and self._repeat == 'one' and self._current is not None:
            return self._current
        if self._queue:
            return self._queue.pop(0)
        if not self._library:
            return None
        if self._shuffle:
            unplayed = [t for t in self._library if t.name.lower() not in self._played]
            if not unplayed:
                if self._repeat != 'all':
                    return None
                self._played.clear()
                unplayed = [t for t in self._library if t != self._current] or list(self._library)
            return self._rng.choice(unplayed)
        if self._current is not None and self._current in self._library:
            self._cursor = self._library.index(self._current)
        nxt = self._cursor + 1
        if nxt >= len(self._library):
            if self._repeat != 'all':
                return None
            nxt = 0
        self._cursor = nxt
        return self._library[nxt]

    def play(self) -> Optional[AudioTrack]:
        with self._lock:
            self._playing = True
            if self._current is None:
                track = self._pick_next(natural=False)
                if track is None and self._library:
                    # program ran out earlier; start over from the top
                    self._cursor = -1
                    self._played.clear()
                    track = self._pick_next(natural=False)
                self._start(track, 'skip')
                self._playing = self._current is not None
            self._emit(AudioEvent(INTERRUPT_REQUESTED))
            return self._current

    def pause(self) -> None:
        with self._lock:
            self._playing = False
            self._emit(AudioEvent(INTERRUPT_REQUESTED))

    def toggle(self) -> bool:
        with self._lock:
            playing = self._playing
        if playing:
            self.pause()
        else:
            self.play()
        with self._lock:
            return self._playing

    def next(self) -> Optional[AudioTrack]:
        with self._lock:
            track = self._start(self._pick_next(natural=False), 'skip')
            if track is not None:
                self._playing = True
            self._emit(AudioEvent(INTERRUPT_REQUESTED))
            return track

    def previous(self) -> Optional[AudioTrack]:
        with self._lock:
            if not self._history:
                track = self._current
            else:
                track = self._history.pop()
                if self._current is not None:
                    # the track we leave goes back to the head of the queue
                    self._queue.insert(0, self._current)
                    self._emit(AudioEvent(TRACK_ENDED, self._current, 'skip'))
                self._current = None
                self._start(track, 'skip')
            if track is not None:
                self._playing = True
            self._emit(AudioEvent(INTERRUPT_REQUESTED))
            return track

    def advance(self) -> Optional[AudioTrack]:
        """Current track finished on its own; select the follow-up."""
        with self._lock:
            return self._start(self._pick_next(natural=True), 'natural')

    def fail_current(self) -> Optional[AudioTrack]:
        """Current track could not be decoded; move past it."""
        with self._lock:
            return self._start(self._pick_next(natural=False), 'error')

    def select_by_name(self, name: str) -> Optional[str]:
        with self._lock:
            track = self.find(name)
            if track is None:
                return None
            self._start(track, 'skip')
            self._playing = True
            self._emit(AudioEvent(INTERRUPT_REQUESTED))
            return track.path

    # ---- modes ----

    def set_shuffle(self, enabled: bool) -> None:
        with self._lock:
            self._shuffle = bool(enabled)
            self._played.clear()
            if self._current is not None:
                self._played.add(self._current.name.lower())

    def set_repeat(self, mode: str) -> str:
        mode = (mode or '').strip().lower()
        if mode not in REPEAT_MODES:
            raise ValueError(f'repeat mode must be one of {", ".join(REPEAT_MODES)}')
        with self._lock:
            self._repeat = mode
        return mode

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def set_enabled(self, enabled: bool) -> bool:
        with self._lock:
            changed = self._enabled != bool(enabled)
            self._enabled = bool(enabled)
            if changed:
                self._emit(AudioEvent(ENABLED_CHANGED, enabled=self._enabled))
            return self._enabled

    # ---- queries ----

    @property
    def is_playing(self) -> bool:
        with self._lock:
            return self._playing

    def current(self) -> Optional[AudioTrack]:
        with self._lock:
            return self._current

    def current_path(self) -> Optional[str]:
        """Path the broadcaster should encode now, or None for silence."""
        with self._lock:
            if not self._enabled or not self._playing or self._current is None:
                return None
            return self._current.path

    def current_song(self) -> Optional[str]:
        with self._lock:
            if self._enabled and self._playing and self._current is not None:
                return self._current.name
            return None

    def state(self) -> dict:
        with self._lock:
            return {
                'folder': self._folder,
                'enabled': self._enabled,
                'is_playing': self._playing,
                'current': self._current.name if self._current else None,
                'queue': [t.name for t in self._queue],
                'shuffle': self._shuffle,
                'repeat': self._repeat,
                'library_count': len(self._library),
            }
