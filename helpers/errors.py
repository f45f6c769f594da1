class StreamerError(Exception):
    """Base error. `status` is the HTTP code a route should answer with."""
    status = 500


class ConfigurationMissing(StreamerError):
    status = 500


class UpstreamUnavailable(StreamerError):
    status = 503


class CaptureError(StreamerError):
    status = 502


class CaptureTimeout(CaptureError):
    status = 504


class EncoderSpawnError(StreamerError):
    status = 502


class TimelapseError(StreamerError):
    status = 400


class TimelapseNotFound(TimelapseError):
    status = 404


class SessionActive(TimelapseError):
    status = 409
