import logging
import threading
from typing import Callable, Iterator, List

from helpers.encoder import EncoderProcess, ffmpeg_command
from helpers.mjpeg import JpegScanner

logger = logging.getLogger('printstreamer.mix')

MIX_MIMETYPE = 'video/mp4'


def build_mix_args(overlay_url: str, audio_url: str, options: dict, audio_enabled: bool = True) -> List[str]:
    args = [
        '-fflags', '+genpts', '-f', 'mjpeg', '-use_wallclock_as_timestamps', '1',
        '-reconnect', '1', '-reconnect_streamed', '1', '-reconnect_delay_max', '2',
        '-i', overlay_url,
    ]
    if audio_enabled:
        args += ['-reconnect', '1', '-reconnect_streamed', '1', '-reconnect_delay_max', '2',
                 '-f', 'mp3', '-i', audio_url, '-map', '0:v:0', '-map', '1:a:0']
    args += [
        '-c:v', 'libx264', '-preset', 'ultrafast', '-tune', 'zerolatency',
        '-b:v', str(options.get('video_bitrate', '2500k')),
        '-maxrate', str(options.get('maxrate', '3000k')),
        '-bufsize', str(options.get('bufsize', '6000k')),
        '-pix_fmt', 'yuv420p', '-g', str(int(options.get('gop', 60))),
    ]
    if audio_enabled:
        args += ['-c:a', 'aac', '-b:a', str(options.get('audio_bitrate', '128k')), '-ar', '44100']
    else:
        args += ['-an']
    args += ['-f', 'mp4', '-movflags', '+frag_keyframe+empty_moov', 'pipe:1']
    return ffmpeg_command(*args)


def build_frame_grab_args(url: str) -> List[str]:
    """Decode a single video frame from `url` and emit it as a JPEG."""
    return ffmpeg_command('-i', url, '-frames:v', '1', '-f', 'image2', '-c:v', 'mjpeg', 'pipe:1')


class MixStreamer:
    """Per-request encoder joining the overlay MJPEG and the audio MP3 into fragmented MP4."""

    def __init__(self, overlay_url: str, audio_url: str, options: dict,
                 audio_enabled: Callable[[], bool] = lambda: True,
                 spawn: Callable[..., EncoderProcess] = EncoderProcess.spawn):
        self.overlay_url = overlay_url
        self.audio_url = audio_url
        self.options = dict(options)
        self._audio_enabled = audio_enabled
        self._spawn = spawn

    def args(self) -> List[str]:
        return build_mix_args(self.overlay_url, self.audio_url, self.options, self._audio_enabled())

    def start(self) -> EncoderProcess:
        """Spawn the encoder; raises EncoderSpawnError before any byte is sent."""
        return self._spawn(self.args(), name='mix')

    def stream(self, proc: EncoderProcess, chunk_size: int = 32 * 1024) -> Iterator[bytes]:
        try:
            for chunk in proc.iter_chunks(chunk_size):
                yield chunk
        finally:
            # client went away or encoder ended: always reap the tree
            proc.stop(grace=5.0)
            logger.info('Mix stream closed (encoder pid=%d exit=%s)', proc.pid, proc.returncode)

    def grab_frame(self, mix_url: str, timeout: float = 10.0) -> bytes | None:
        proc = self._spawn(build_frame_grab_args(mix_url), name='mix-capture')
        timer = threading.Timer(timeout, proc.kill_tree)
        timer.daemon = True
        timer.start()
        scanner = JpegScanner()
        try:
            for chunk in proc.iter_chunks():
                frames = scanner.feed(chunk)
                if frames:
                    return frames[0]
            return None
        finally:
            timer.cancel()
            proc.stop(grace=2.0)
