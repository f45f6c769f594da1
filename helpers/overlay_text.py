import logging
import math
import os
import re
import threading
from datetime import datetime
from typing import Callable, Optional

from helpers.errors import ConfigurationMissing, UpstreamUnavailable
from helpers.moonraker import MoonrakerClient, Telemetry

logger = logging.getLogger('printstreamer.overlay')

MIN_REFRESH_MS = 200
UNKNOWN_NUMBER = '—'
UNKNOWN = '-'

_PLACEHOLDER = re.compile(r'\{(\w+)(?::([^{}]*))?\}')
_PICTURE = re.compile(r'^[0#,]*(?:\.([0#]+))?$')
_DATE_TOKEN = re.compile(r'yyyy|yy|MM|dd|HH|hh|mm|ss|tt|H|h')


def format_number(value: Optional[float], fmt: Optional[str], default: str = '0.0') -> str:
    """Render a number with a picture format like '0', '0.0' or '#,0.00'.

    Anything else is tried as a Python format spec. None renders as '-',
    NaN and infinity as '—'.
    """
    if value is None:
        return UNKNOWN
    value = float(value)
    if not math.isfinite(value):
        return UNKNOWN_NUMBER
    fmt = fmt if fmt else default
    m = _PICTURE.match(fmt)
    if m:
        decimals = len(m.group(1) or '')
        sep = ',' if ',' in fmt.split('.', 1)[0] else ''
        return format(value, f'{sep}.{decimals}f')
    try:
        return format(value, fmt)
    except ValueError:
        return format_number(value, default, '0.0')


def format_datetime(value: Optional[datetime], fmt: Optional[str], default: str = 'HH:mm:ss') -> str:
    """Render a datetime with yyyy/MM/dd/HH/hh/mm/ss/tt tokens, or strftime when fmt has '%'."""
    if value is None:
        return UNKNOWN
    fmt = fmt if fmt else default
    if '%' in fmt:
        return value.strftime(fmt)

    def _token(m: re.Match) -> str:
        tok = m.group(0)
        hour12 = value.hour % 12 or 12
        return {
            'yyyy': f'{value.year:04d}',
            'yy': f'{value.year % 100:02d}',
            'MM': f'{value.month:02d}',
            'dd': f'{value.day:02d}',
            'HH': f'{value.hour:02d}',
            'H': str(value.hour),
            'hh': f'{hour12:02d}',
            'h': str(hour12),
            'mm': f'{value.minute:02d}',
            'ss': f'{value.second:02d}',
            'tt': 'AM' if value.hour < 12 else 'PM',
        }[tok]

    return _DATE_TOKEN.sub(_token, fmt)


def _nullable(value) -> str:
    if value is None or value == '':
        return UNKNOWN
    return str(value)


def render_template(template: str, t: Telemetry, now: datetime | None = None, song: str | None = None) -> str:
    now = now or datetime.now()
    filament_m = t.filament_used_mm / 1000.0 if t.filament_used_mm is not None else None

    numeric = {
        'nozzle': (t.nozzle, '0.0'),
        'nozzletarget': (t.nozzle_target, '0.0'),
        'bed': (t.bed, '0.0'),
        'bedtarget': (t.bed_target, '0.0'),
        'progress': (t.progress, '0'),
        'speed': (t.speed, '0'),
        'flow': (t.flow, '0.0'),
        'filament': (filament_m, '0.00'),
    }

    def _sub(m: re.Match) -> str:
        name = m.group(1).lower()
        fmt = m.group(2)
        if name in numeric:
            value, default = numeric[name]
            return format_number(value, fmt, default)
        if name == 'speedfactor':
            if t.speed_factor is None:
                return UNKNOWN
            return format_number(t.speed_factor, fmt, '0') + '%'
        if name == 'layer':
            return _nullable(t.current_layer)
        if name == 'layermax':
            return _nullable(t.total_layers)
        if name == 'layers':
            return f'{_nullable(t.current_layer)}/{_nullable(t.total_layers)}'
        if name == 'time':
            return format_datetime(now, fmt, 'HH:mm:ss')
        if name == 'eta':
            return format_datetime(t.eta, fmt, 'HH:mm')
        if name == 'state':
            return _nullable(t.state)
        if name == 'filename':
            return _nullable(t.filename)
        if name == 'slicer':
            return _nullable(t.slicer)
        return m.group(0)

    text = _PLACEHOLDER.sub(_sub, template or '')
    if song:
        text = text.rstrip('\n') + f'\nSong: {song}'
    return text.replace('\r', '')


def write_atomic(path: str, text: str) -> None:
    tmp = path + '.tmp'
    with open(tmp, 'w', encoding='utf-8', newline='') as f:
        f.write(text)
    os.replace(tmp, path)


class OverlayTextWriter:
    """Polls telemetry and atomically republishes the rendered overlay text file.

    The encoder reads the file with drawtext reload=1, so readers only ever see a
    complete render. When telemetry fails the previous file is left untouched.
    """

    def __init__(self, client: MoonrakerClient, template: str, path: str, refresh_ms: int = 1000,
                 song_provider: Callable[[], Optional[str]] | None = None):
        self.client = client
        self.path = path
        self.refresh_ms = max(MIN_REFRESH_MS, int(refresh_ms or 1000))
        self._template = template
        self._song_provider = song_provider
        self._lock = threading.Lock()
        self._latest: str | None = None
        self._th: threading.Thread | None = None
        self._stop = threading.Event()
        self._failing = False

    @property
    def template(self) -> str:
        with self._lock:
            return self._template

    def set_template(self, template: str) -> None:
        with self._lock:
            self._template = template

    def latest_text(self) -> str | None:
        with self._lock:
            return self._latest

    def ensure_file(self) -> None:
        """Create the output directory and a first render so drawtext has a file to open."""
        try:
            os.makedirs(os.path.dirname(self.path) or '.', exist_ok=True)
        except OSError as e:
            raise ConfigurationMissing(f'cannot create overlay directory for {self.path}: {e}') from e
        if not os.path.exists(self.path):
            write_atomic(self.path, render_template(self.template, Telemetry()))

    def start(self) -> None:
        if self._th is not None and self._th.is_alive():
            return
        self.ensure_file()
        self._stop.clear()
        self._th = threading.Thread(target=self._run, name='OverlayTextWriter', daemon=True)
        self._th.start()
        logger.info('Overlay text writer started: %s every %d ms', self.path, self.refresh_ms)

    def stop(self) -> None:
        self._stop.set()

    def _song(self) -> Optional[str]:
        if self._song_provider is None:
            return None
        try:
            return self._song_provider()
        except Exception as e:
            logger.debug('Song provider failed: %s', e)
            return None

    def refresh_once(self, now: datetime | None = None) -> bool:
        """One poll + publish. Returns False when telemetry was unavailable."""
        try:
            telemetry = self.client.telemetry(now)
        except UpstreamUnavailable as e:
            if not self._failing:
                logger.warning('Telemetry unavailable, keeping previous overlay: %s', e)
                self._failing = True
            return False
        if self._failing:
            logger.info('Telemetry recovered')
            self._failing = False
        text = render_template(self.template, telemetry, now, self._song())
        with self._lock:
            changed = text != self._latest
        if changed:
            write_atomic(self.path, text)
            with self._lock:
                self._latest = text
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.refresh_once()
            except OSError as e:
                logger.error('Failed to publish overlay text: %s', e)
            except Exception:
                logger.exception('Overlay text writer error')
            self._stop.wait(self.refresh_ms / 1000.0)
