import base64
import logging
import os
from functools import lru_cache
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger('printstreamer.encoders')

# 1x1 black baseline JPEG used when OpenCV cannot produce one
_TINY_BLACK_JPEG = base64.b64decode(
    '/9j/4AAQSkZJRgABAQAAAQABAAD/2wCEAAICAgICAgMCAgIDAwMDBAYEBAQEBAgGBgUGBggHBwcHBw0JCQgKCAgJCgsMDAwMDAwM'
    'DAwMDAwMDAz/wAALCAABAAEBAREA/8QAFQABAQAAAAAAAAAAAAAAAAAAAAb/xAAUEAEAAAAAAAAAAAAAAAAAAAAA/8QAFQEBAQAAAAAA'
    'AAAAAAAAAAAAAgP/xAAUEQEAAAAAAAAAAAAAAAAAAAAA/9oADAMBAAIRAxEAPwD9AP/Z'
)


def encode_jpeg_bgr(frame, quality: int = 75) -> bytes:
    """Encode a BGR image to JPEG bytes using OpenCV.
    - frame: numpy ndarray in BGR order
    - quality: JPEG quality 1-100
    """
    ret, buf = cv2.imencode('.jpg', frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ret:
        return _TINY_BLACK_JPEG
    return buf.tobytes()


@lru_cache(maxsize=8)
def black_frame_jpeg(width: int = 640, height: int = 360, quality: int = 60) -> bytes:
    """Solid black JPEG of the given size, cached per size."""
    frame = np.zeros((max(1, int(height)), max(1, int(width)), 3), dtype=np.uint8)
    return encode_jpeg_bgr(frame, quality)


def load_fallback_jpeg(path: Optional[str], width: int = 640, height: int = 360) -> bytes:
    """Fallback frame: a configured JPEG file if readable, else a generated black frame."""
    if path and os.path.isfile(path):
        try:
            with open(path, 'rb') as f:
                data = f.read()
            if data[:2] == b'\xff\xd8':
                return data
            logger.warning('Fallback image %s is not a JPEG; using generated black frame', path)
        except OSError as e:
            logger.warning('Failed to read fallback image %s: %s', path, e)
    return black_frame_jpeg(width, height)
