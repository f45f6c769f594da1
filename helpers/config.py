import copy
import json
import os
from typing import Dict, Any, Mapping

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'server': {
        'local_base_url': '',          # empty -> http://127.0.0.1:<port>
    },
    'stream': {
        'source_url': '',              # upstream printer webcam (MJPEG)
        'camera_disabled': False,
        'fallback_image': '',          # optional JPEG served while the camera is unreachable
        'fallback_fps': 2,
        'fallback_width': 640,
        'fallback_height': 360,
        'capture_timeout': 6.0,
        'snapshot_timeout': 5.0,
    },
    'moonraker': {
        'base_url': '',
        'api_key': '',
        'auth_header': '',             # "Header-Name: value"
        'timeout': 5.0,
    },
    'overlay': {
        'enabled': True,
        'template': (
            'Nozzle: {nozzle:0}°C/{nozzleTarget:0}°C | Bed: {bed:0}°C/{bedTarget:0}°C | '
            'Layer {layers} | {progress:0}%\n'
            'Spd:{speed}mm/s | Flow:{flow} | Fil:{filament}m | ETA:{eta:hh:mm tt}'
        ),
        'refresh_ms': 1000,
        'text_file': '',               # empty -> <workdir>/overlay/overlay.txt
        'show_song': True,
        'font_file': '/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf',
        'font_size': 16,
        'font_color': 'white',
        'box_color': 'black@0.4',
        'box_height': 75,
        'x': '',
        'y': '',
        'quality': 5,
        'idle_timeout': 30.0,
    },
    'audio': {
        'enabled': True,
        'folder': 'audio',
        'bitrate': '192k',
        'sample_rate': 44100,
        'max_upload_bytes': 200 * 1024 * 1024,
    },
    'mix': {
        'enabled': True,
        'video_bitrate': '2500k',
        'maxrate': '3000k',
        'bufsize': '6000k',
        'gop': 60,
        'audio_bitrate': '128k',
    },
    'rtmp': {
        'url': '',                     # ingest host, e.g. rtmp://a.rtmp.youtube.com/live2
        'stream_key': '',
        'source': 'mix',               # 'mix' or 'direct'
        'fps': 30,
        'bitrate_kbps': 2500,
        'max_attempts': 6,
        'auto_broadcast': False,       # start the live publish when a print starts
        'end_after_print': True,       # stop it when the print finishes
    },
    'timelapse': {
        'main_folder': 'timelapse',
        'period_seconds': 60,
        'start_after_layer1': True,
        'last_layer_offset': 1,
        'auto_finalize': True,
        'verbose_logs': False,
        'fps': 30,
        'freeze_seconds': 5,
        'capture_timeout': 10.0,
        'auto_start': True,            # drive sessions from Moonraker print state
        'poll_seconds': 5.0,
        'idle_finalize_seconds': 20.0,
    },
}

# env var -> (section, key, type)
ENV_OVERRIDES = {
    'PRINTSTREAMER_SOURCE_URL': ('stream', 'source_url', str),
    'PRINTSTREAMER_FALLBACK_IMAGE': ('stream', 'fallback_image', str),
    'PRINTSTREAMER_MOONRAKER_URL': ('moonraker', 'base_url', str),
    'PRINTSTREAMER_MOONRAKER_API_KEY': ('moonraker', 'api_key', str),
    'PRINTSTREAMER_OVERLAY_TEMPLATE': ('overlay', 'template', str),
    'PRINTSTREAMER_OVERLAY_FONT': ('overlay', 'font_file', str),
    'PRINTSTREAMER_AUDIO_DIR': ('audio', 'folder', str),
    'PRINTSTREAMER_RTMP_URL': ('rtmp', 'url', str),
    'PRINTSTREAMER_RTMP_KEY': ('rtmp', 'stream_key', str),
    'PRINTSTREAMER_TIMELAPSE_DIR': ('timelapse', 'main_folder', str),
    'PRINTSTREAMER_TIMELAPSE_PERIOD': ('timelapse', 'period_seconds', float),
    'PRINTSTREAMER_TIMELAPSE_AUTO_START': ('timelapse', 'auto_start', bool),
}


def load_config(path: str) -> Dict[str, Any] | None:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError):
        return None


def save_config(path: str, section: str, values: Dict[str, Any]) -> None:
    """Merge `values` into one section of the JSON config, preserving everything else."""
    prev: Dict[str, Any] = load_config(path) or {}
    obj = {
        **prev,
        section: {**(prev.get(section) or {}), **values},
    }
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    tmp = path + '.tmp'
    with open(tmp, 'w', encoding='utf-8') as f:
        json.dump(obj, f, indent=2)
    os.replace(tmp, path)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def build_settings(path: str | None, environ: Mapping[str, str] | None = None) -> Dict[str, Dict[str, Any]]:
    """Defaults, overlaid by the JSON file at `path`, overlaid by PRINTSTREAMER_* env vars."""
    environ = os.environ if environ is None else environ
    settings = copy.deepcopy(DEFAULTS)
    cfg = load_config(path) if path else None
    if isinstance(cfg, dict):
        for section, values in cfg.items():
            if section in settings and isinstance(values, dict):
                settings[section].update(values)
    for var, (section, key, kind) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw.strip() == '':
            continue
        try:
            settings[section][key] = _parse_bool(raw) if kind is bool else kind(raw.strip())
        except ValueError:
            continue
    return settings
