import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import requests

from helpers.errors import UpstreamUnavailable

logger = logging.getLogger('printstreamer.moonraker')

# One superset query; every subtree is optional in the reply
STATUS_QUERY = (
    '/printer/objects/query'
    '?extruder=temperature,target'
    '&heater_bed=temperature,target'
    '&print_stats=state,filename,info,print_duration,filament_used,total_duration'
    '&display_status=progress,flow,speed,volumetric_flow'
    '&virtual_sdcard=progress,file_position,print_duration'
    '&gcode_move=speed,speed_factor,extrude_factor'
    '&motion_report'
)

ACTIVE_STATES = ('printing', 'paused', 'resuming')

# 1.75 mm filament cross-section
FILAMENT_AREA_MM2 = math.pi * (1.75 / 2) ** 2


@dataclass
class Telemetry:
    nozzle: float = math.nan
    nozzle_target: float = math.nan
    bed: float = math.nan
    bed_target: float = math.nan
    state: Optional[str] = None
    filename: Optional[str] = None
    slicer: Optional[str] = None
    progress: Optional[float] = None
    current_layer: Optional[int] = None
    total_layers: Optional[int] = None
    speed: Optional[float] = None
    speed_factor: Optional[float] = None
    flow: Optional[float] = None
    filament_used_mm: Optional[float] = None
    print_duration: Optional[float] = None
    eta: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return (self.state or '').lower() in ('printing', 'paused')


class MoonrakerClient:
    def __init__(self, base_url: str, api_key: str = '', auth_header: str = '',
                 timeout: float = 5.0, http=None):
        self.base_url = (base_url or '').rstrip('/')
        self.timeout = timeout
        self._headers: Dict[str, str] = {}
        if auth_header and ':' in auth_header:
            name, value = auth_header.split(':', 1)
            self._headers[name.strip()] = value.strip()
        elif api_key:
            self._headers['X-Api-Key'] = api_key
        self._http = http or requests.Session()
        self._meta_cache: Dict[str, Dict[str, Any]] = {}
        self._meta_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _get_json(self, path: str, params: Dict[str, str] | None = None) -> Dict[str, Any]:
        if not self.base_url:
            raise UpstreamUnavailable('moonraker base_url not configured')
        url = self.base_url + path
        try:
            resp = self._http.get(url, params=params, headers=self._headers, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            raise UpstreamUnavailable(f'moonraker request {path} failed: {e}') from e

    def query_status(self) -> Dict[str, Any]:
        """The `result.status` object, or {} when the reply has none."""
        data = self._get_json(STATUS_QUERY)
        result = data.get('result') if isinstance(data, dict) else None
        status = result.get('status') if isinstance(result, dict) else None
        return status if isinstance(status, dict) else {}

    def file_metadata(self, filename: str) -> Optional[Dict[str, Any]]:
        """Slicer metadata for a gcode file, cached per filename. None when unavailable."""
        if not filename:
            return None
        with self._meta_lock:
            if filename in self._meta_cache:
                return self._meta_cache[filename]
        try:
            data = self._get_json('/server/files/metadata', params={'filename': filename})
        except UpstreamUnavailable as e:
            logger.debug('No metadata for %s: %s', filename, e)
            return None
        meta = data.get('result') if isinstance(data, dict) else None
        if not isinstance(meta, dict):
            return None
        with self._meta_lock:
            self._meta_cache[filename] = meta
        return meta

    def telemetry(self, now: datetime | None = None) -> Telemetry:
        status = self.query_status()
        filename = _get(status, 'print_stats', 'filename')
        meta = self.file_metadata(filename) if isinstance(filename, str) and filename else None
        return parse_telemetry(status, meta, now)


def _get(tree: Dict[str, Any], *path: str) -> Any:
    node: Any = tree
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _num(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _temp(value: Any) -> float:
    num = _num(value)
    return math.nan if num is None else num


def _int(value: Any) -> Optional[int]:
    num = _num(value)
    if num is None or not math.isfinite(num):
        return None
    return int(num)


def parse_telemetry(status: Dict[str, Any], metadata: Dict[str, Any] | None = None,
                    now: datetime | None = None) -> Telemetry:
    """Normalise a Moonraker `result.status` tree; any subtree may be missing."""
    now = now or datetime.now()
    status = status or {}
    t = Telemetry(
        nozzle=_temp(_get(status, 'extruder', 'temperature')),
        nozzle_target=_temp(_get(status, 'extruder', 'target')),
        bed=_temp(_get(status, 'heater_bed', 'temperature')),
        bed_target=_temp(_get(status, 'heater_bed', 'target')),
    )
    state = _get(status, 'print_stats', 'state')
    t.state = state if isinstance(state, str) and state else None
    filename = _get(status, 'print_stats', 'filename')
    t.filename = filename if isinstance(filename, str) and filename else None

    t.current_layer = _int(_get(status, 'print_stats', 'info', 'current_layer'))
    t.total_layers = _int(_get(status, 'print_stats', 'info', 'total_layer'))
    if metadata:
        if t.total_layers is None:
            t.total_layers = _int(metadata.get('layer_count'))
        slicer = metadata.get('slicer')
        if isinstance(slicer, str) and slicer:
            t.slicer = slicer

    # file position beats display_status, layer ratio is the last resort
    sd_progress = _num(_get(status, 'virtual_sdcard', 'progress'))
    ds_progress = _num(_get(status, 'display_status', 'progress'))
    fraction = None
    if sd_progress is not None and sd_progress > 0:
        fraction = sd_progress
    elif ds_progress is not None:
        fraction = ds_progress
    elif t.current_layer is not None and t.total_layers:
        fraction = t.current_layer / float(t.total_layers)
    if fraction is not None and math.isfinite(fraction):
        t.progress = max(0.0, min(100.0, fraction * 100.0))

    t.filament_used_mm = _num(_get(status, 'print_stats', 'filament_used'))
    t.print_duration = _num(_get(status, 'print_stats', 'print_duration'))
    if t.print_duration is None:
        t.print_duration = _num(_get(status, 'virtual_sdcard', 'print_duration'))

    speed_factor = _num(_get(status, 'gcode_move', 'speed_factor'))
    if speed_factor is not None:
        t.speed_factor = speed_factor * 100.0

    if t.is_active:
        live = _num(_get(status, 'motion_report', 'live_velocity'))
        historical = _num(_get(status, 'gcode_move', 'speed'))
        if live is not None:
            t.speed = live if live > 0.1 else 0.0
        elif historical is not None:
            t.speed = historical / 60.0
        else:
            t.speed = 0.0

        flow = _num(_get(status, 'display_status', 'volumetric_flow'))
        if flow is None:
            extruder_velocity = _num(_get(status, 'motion_report', 'live_extruder_velocity'))
            extrude_factor = _num(_get(status, 'gcode_move', 'extrude_factor'))
            if extruder_velocity is not None:
                factor = extrude_factor if extrude_factor is not None else 1.0
                flow = max(0.0, extruder_velocity) * FILAMENT_AREA_MM2 * factor
        t.flow = flow

        if fraction is not None and fraction > 0.01 and t.print_duration:
            remaining = t.print_duration / fraction - t.print_duration
            if math.isfinite(remaining) and remaining >= 0:
                t.eta = now + timedelta(seconds=remaining)
    return t
