import logging
import os
import signal
import subprocess
import threading
from typing import Iterator, List, Optional

from helpers.errors import EncoderSpawnError

logger = logging.getLogger('printstreamer.ffmpeg')

FFMPEG_BIN = os.environ.get('PRINTSTREAMER_FFMPEG', 'ffmpeg')

# stderr noise ffmpeg prints for perfectly usable webcam JPEGs
_BENIGN_STDERR = (
    'unable to decode app fields',
    'last message repeated',
    'deprecated pixel format used',
)


def ffmpeg_command(*args: str) -> List[str]:
    """Prefix an argument vector with the ffmpeg binary and quiet banner flags."""
    return [FFMPEG_BIN, '-hide_banner', '-nostats', '-loglevel', 'warning', *args]


class EncoderProcess:
    """Handle for one running encoder subprocess.

    stdout is a binary pipe owned by the caller. stderr is drained on a daemon
    thread into the `printstreamer.ffmpeg` logger so the child never blocks on it.
    The child runs in its own process group so stop()/kill_tree() take down
    anything it forked.
    """

    def __init__(self, proc: subprocess.Popen, name: str):
        self.name = name
        self._proc = proc
        self._lock = threading.Lock()
        self._stderr_th = threading.Thread(target=self._drain_stderr, name=f'ffmpeg-stderr-{name}', daemon=True)
        self._stderr_th.start()

    @classmethod
    def spawn(cls, args: List[str], name: str = 'encoder', stdin: bool = True) -> 'EncoderProcess':
        logger.debug('[%s] spawn: %s', name, ' '.join(args))
        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.PIPE if stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                start_new_session=(os.name != 'nt'),
            )
        except OSError as e:
            raise EncoderSpawnError(f'failed to start {args[0]}: {e}') from e
        logger.info('[%s] encoder started pid=%d', name, proc.pid)
        return cls(proc, name)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.poll()

    @property
    def running(self) -> bool:
        return self._proc.poll() is None

    @property
    def stdout(self):
        return self._proc.stdout

    def read(self, size: int = 16384) -> bytes:
        """Read up to `size` bytes from stdout. Returns b'' at EOF."""
        out = self._proc.stdout
        if out is None:
            return b''
        try:
            return out.read(size) or b''
        except (OSError, ValueError):
            return b''

    def iter_chunks(self, size: int = 16384) -> Iterator[bytes]:
        while True:
            chunk = self.read(size)
            if not chunk:
                return
            yield chunk

    def write_stdin(self, data: bytes) -> bool:
        stdin = self._proc.stdin
        if stdin is None:
            return False
        try:
            stdin.write(data)
            stdin.flush()
            return True
        except (BrokenPipeError, OSError, ValueError):
            return False

    def signal_interrupt(self) -> None:
        """Ask ffmpeg to finish cleanly by typing 'q' on its stdin."""
        if self.write_stdin(b'q'):
            try:
                self._proc.stdin.close()
            except (OSError, ValueError):
                pass

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def kill_tree(self) -> None:
        with self._lock:
            if self._proc.poll() is not None:
                return
            try:
                if os.name != 'nt':
                    os.killpg(self._proc.pid, signal.SIGKILL)
                else:
                    self._proc.kill()
            except ProcessLookupError:
                return
            except OSError as e:
                logger.warning('[%s] kill failed pid=%d: %s', self.name, self._proc.pid, e)
                self._proc.kill()
        self._proc.wait(timeout=5)
        logger.info('[%s] encoder pid=%d killed', self.name, self._proc.pid)

    def stop(self, grace: float = 5.0) -> Optional[int]:
        """Soft quit, then kill the process tree after `grace` seconds."""
        if self._proc.poll() is None:
            self.signal_interrupt()
            if self.wait(grace) is None:
                self.kill_tree()
        self._close_pipes()
        return self._proc.poll()

    def _close_pipes(self) -> None:
        for pipe in (self._proc.stdin, self._proc.stdout):
            if pipe is None:
                continue
            try:
                pipe.close()
            except (OSError, ValueError):
                pass

    def _drain_stderr(self) -> None:
        err = self._proc.stderr
        if err is None:
            return
        try:
            for raw in iter(err.readline, b''):
                line = raw.decode('utf-8', 'replace').rstrip()
                if not line:
                    continue
                if any(b in line.lower() for b in _BENIGN_STDERR):
                    logger.debug('[%s] %s', self.name, line)
                else:
                    logger.warning('[%s] %s', self.name, line)
        except (OSError, ValueError):
            pass
        finally:
            try:
                err.close()
            except OSError:
                pass


def run_encoder(args: List[str], name: str = 'encoder', timeout: Optional[float] = None) -> Optional[int]:
    """Run an encoder to completion. Returns its exit code, or None if it overran `timeout`."""
    proc = EncoderProcess.spawn(args, name=name, stdin=False)
    overran = threading.Event()

    def _expire():
        overran.set()
        logger.warning('[%s] encoder overran %.0fs, killing', name, timeout)
        proc.kill_tree()

    # stdout stays open until exit, so the deadline is enforced from a timer
    timer = threading.Timer(timeout, _expire) if timeout else None
    if timer is not None:
        timer.daemon = True
        timer.start()
    try:
        for _ in proc.iter_chunks():
            pass
        code = proc.wait()
    finally:
        if timer is not None:
            timer.cancel()
    return None if overran.is_set() else code
