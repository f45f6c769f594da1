import logging
import threading
import time
from typing import Callable, Optional

from helpers.errors import UpstreamUnavailable
from helpers.moonraker import ACTIVE_STATES, MoonrakerClient
from helpers.timelapse import TimelapseManager, sanitize_name

logger = logging.getLogger('printstreamer.monitor')

DONE_STATES = ('complete', 'cancelled', 'standby', 'error')


class PrintMonitor:
    """Polls Moonraker and drives timelapse sessions from the printer's job state.

    `on_print_started(job)` fires once a new job's session is open and
    `on_print_finished(job)` once the printer reports it done; the server hangs
    the live publish toggles off these.
    """

    def __init__(self, client: MoonrakerClient, manager: TimelapseManager, poll_seconds: float = 5.0,
                 idle_finalize_seconds: float = 20.0, clock: Callable[[], float] = time.monotonic,
                 on_print_started: Callable[[str], None] | None = None,
                 on_print_finished: Callable[[str], None] | None = None):
        self.client = client
        self.manager = manager
        self.on_print_started = on_print_started
        self.on_print_finished = on_print_finished
        self._live_job: Optional[str] = None
        self.poll_seconds = max(0.5, float(poll_seconds))
        self.idle_finalize_seconds = float(idle_finalize_seconds)
        self._clock = clock
        self._session: Optional[str] = None
        self._job: Optional[str] = None
        self._finalized_job: Optional[str] = None
        self._done_since: Optional[float] = None
        self._last_state: Optional[str] = None
        self._stop = threading.Event()
        self._th: Optional[threading.Thread] = None

    @property
    def session(self) -> Optional[str]:
        return self._session

    def start(self) -> None:
        if self._th is not None and self._th.is_alive():
            return
        self._stop.clear()
        self._th = threading.Thread(target=self._run, name='PrintMonitor', daemon=True)
        self._th.start()
        logger.info('Print monitor started (every %.1fs)', self.poll_seconds)

    def stop(self) -> None:
        self._stop.set()
        if self._th is not None:
            self._th.join(timeout=self.poll_seconds + 1)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception('Print monitor poll failed')
            self._stop.wait(self.poll_seconds)

    def _finalize(self, reason: str) -> Optional[str]:
        name = self._session
        self._finalized_job = self._job
        self._session = None
        self._done_since = None
        if name is None or not self.manager.is_active(name):
            return None
        logger.info('Finalizing timelapse %s (%s)', name, reason)
        return self.manager.stop(name)

    def _notify(self, hook: Callable[[str], None] | None, job: str) -> None:
        if hook is None:
            return
        try:
            hook(job)
        except Exception:
            logger.exception('Print lifecycle hook failed for %s', job)

    def _print_started(self, job: str) -> None:
        self._live_job = job
        self._notify(self.on_print_started, job)

    def _print_finished(self) -> None:
        job = self._live_job
        if job is None:
            return
        self._live_job = None
        logger.info('Print finished: %s', job)
        self._notify(self.on_print_finished, job)

    def poll_once(self) -> None:
        try:
            t = self.client.telemetry()
        except UpstreamUnavailable as e:
            logger.debug('Printer status unavailable: %s', e)
            return
        state = (t.state or '').lower()
        if state != self._last_state:
            logger.info('Printer state: %s -> %s', self._last_state or '-', state or '-')
            self._last_state = state

        if self._session is not None and not self.manager.is_active(self._session):
            # finished elsewhere: last-layer finalize or an API stop
            self._finalized_job = self._job
            self._session = None

        if state in ACTIVE_STATES:
            self._done_since = None
            if self._session is not None and t.filename and t.filename != self._job:
                self._finalize(f'job changed to {t.filename}')
            if self._session is None and t.filename and t.filename != self._finalized_job:
                self._session = self.manager.start(sanitize_name(t.filename), t.filename)
                self._job = t.filename if self._session else None
                if self._session is not None:
                    self._print_started(t.filename)
            if self._session is None:
                return
            self.manager.notify_printer_state(self._session, state)
            if self.manager.notify_print_progress(self._session, t.current_layer, t.total_layers) is not None \
                    or not self.manager.is_active(self._session):
                self._finalized_job = self._job
                self._session = None
            return

        if state not in DONE_STATES:
            return
        if self._session is None:
            # a later print of the same file is a new job
            self._finalized_job = None
            self._print_finished()
            return
        now = self._clock()
        if self._done_since is None:
            self._done_since = now
        if now - self._done_since >= self.idle_finalize_seconds:
            self._finalize(f'printer {state}')
            self._print_finished()
