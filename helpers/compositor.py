import logging
import threading
import time
from typing import Callable, List, Optional

from helpers.encoder import EncoderProcess, ffmpeg_command
from helpers.errors import EncoderSpawnError
from helpers.frame_hub import FrameHub
from helpers.mjpeg import JpegScanner
from helpers.overlay_layout import build_filter, clamp_quality, compute_layout

logger = logging.getLogger('printstreamer.compositor')

MJPEG_INPUT_ARGS = [
    '-reconnect', '1', '-reconnect_streamed', '1', '-reconnect_delay_max', '2',
    '-fflags', '+genpts+discardcorrupt',
    '-analyzeduration', '5M', '-probesize', '10M', '-max_delay', '5000000',
    '-f', 'mjpeg', '-use_wallclock_as_timestamps', '1',
]

BACKOFF_INITIAL = 0.5
BACKOFF_CAP = 5.0


def build_overlay_args(source_url: str, text_file: str, options: dict) -> List[str]:
    font_size = int(options.get('font_size', 16))
    box_height = int(options.get('box_height', 75))
    layout = compute_layout(text_file, font_size, box_height, options.get('x'), options.get('y'))
    vf = build_filter(
        layout, text_file,
        font_file=options.get('font_file', ''),
        font_size=font_size,
        font_color=options.get('font_color', 'white'),
        box_color=options.get('box_color', 'black@0.4'),
        box_height=box_height,
    )
    return ffmpeg_command(
        *MJPEG_INPUT_ARGS, '-i', source_url,
        '-vf', vf,
        '-an', '-c:v', 'mjpeg', '-huffman', 'optimal', '-q:v', str(clamp_quality(options.get('quality', 5))),
        '-f', 'mpjpeg', '-boundary_tag', 'frame', 'pipe:1',
    )


class OverlayCompositor:
    """Runs one overlay encoder and republishes its JPEG frames through a FrameHub.

    The encoder starts with the first client, is restarted with backoff if it
    exits, and is stopped once nobody has watched for `idle_timeout` seconds.
    """

    def __init__(self, source_url: str, text_file: str, options: dict,
                 spawn: Callable[..., EncoderProcess] = EncoderProcess.spawn,
                 before_start: Callable[[], None] | None = None):
        self.source_url = source_url
        self.text_file = text_file
        self.options = dict(options)
        self.idle_timeout = float(self.options.get('idle_timeout', 30.0))
        self.hub = FrameHub('overlay')
        self._spawn = spawn
        self._before_start = before_start
        self._lock = threading.Lock()
        self._th: Optional[threading.Thread] = None
        self._running = False
        self._proc: Optional[EncoderProcess] = None
        self._wake = threading.Event()
        self.restarts = 0

    def args(self) -> List[str]:
        return build_overlay_args(self.source_url, self.text_file, self.options)

    def ensure_running(self) -> None:
        with self._lock:
            if self._running and self._th is not None and self._th.is_alive():
                return
            self._running = True
            self._wake.clear()
            self.hub.reopen()
            self.hub.touch()
            self._th = threading.Thread(target=self._run, name='OverlayCompositor', daemon=True)
            self._th.start()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            proc = self._proc
        self._wake.set()
        if proc is not None:
            proc.stop(grace=3.0)
        self.hub.close()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def status(self) -> dict:
        with self._lock:
            proc = self._proc
            return {
                'running': self._running,
                'encoder_pid': proc.pid if proc is not None and proc.running else None,
                'clients': self.hub.clients,
                'restarts': self.restarts,
            }

    def _watch_idle(self, proc: EncoderProcess) -> None:
        # The reader blocks on stdout, so idleness is enforced from a side thread
        while proc.running:
            if self.hub.idle_for() > self.idle_timeout or not self.running:
                logger.info('Overlay idle for %.0fs, stopping encoder', self.idle_timeout)
                with self._lock:
                    self._running = False
                proc.stop(grace=3.0)
                return
            time.sleep(1.0)

    def _run(self) -> None:
        failures = 0
        while self.running:
            if self._before_start is not None:
                self._before_start()
            try:
                proc = self._spawn(self.args(), name='overlay')
            except EncoderSpawnError as e:
                logger.error('Overlay encoder failed to start: %s', e)
                break
            with self._lock:
                self._proc = proc
            threading.Thread(target=self._watch_idle, args=(proc,), name='OverlayIdleWatch', daemon=True).start()
            scanner = JpegScanner()
            got_frame = False
            for chunk in proc.iter_chunks():
                for frame in scanner.feed(chunk):
                    got_frame = True
                    self.hub.publish(frame)
            code = proc.wait(5.0)
            with self._lock:
                self._proc = None
            if not self.running:
                break
            failures = 0 if got_frame else failures + 1
            delay = min(BACKOFF_INITIAL * (2 ** max(0, failures - 1)), BACKOFF_CAP)
            self.restarts += 1
            logger.warning('Overlay encoder exited (code=%s); restarting in %.1fs', code, delay)
            if self._wake.wait(delay):
                break
        with self._lock:
            self._running = False
        self.hub.close()
        logger.info('Overlay compositor stopped')
