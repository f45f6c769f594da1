import logging
import socket
import threading
from typing import Dict, Optional

from zeroconf import IPVersion, ServiceInfo, Zeroconf

logger = logging.getLogger('printstreamer.mdns')

SERVICE_TYPE = '_printstreamer._tcp.local.'


def local_ip() -> str:
    """Address other hosts on the LAN can reach us at; 127.0.0.1 when offline."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.settimeout(1.0)
        # UDP connect sends nothing; it only selects the outbound interface
        s.connect(('10.255.255.255', 1))
        return s.getsockname()[0]
    except OSError:
        try:
            return socket.gethostbyname(socket.gethostname())
        except OSError:
            return '127.0.0.1'
    finally:
        s.close()


class MdnsAdvertiser:
    """Registers the gateway as `_printstreamer._tcp.local.` so players can find the streams."""

    def __init__(self, name: str, port: int, txt: Dict[str, str]):
        self.name = name
        self.port = port
        self.txt = {k: str(v) for k, v in (txt or {}).items()}
        self._zc: Optional[Zeroconf] = None
        self._info: Optional[ServiceInfo] = None
        self._lock = threading.Lock()

    def _build_info(self) -> ServiceInfo:
        ip = local_ip()
        try:
            addr = socket.inet_aton(ip)
        except OSError:
            addr = socket.inet_aton('127.0.0.1')
        return ServiceInfo(
            SERVICE_TYPE,
            f'{self.name}.{SERVICE_TYPE}',
            addresses=[addr],
            port=self.port,
            properties=self.txt,
        )

    def start(self) -> None:
        with self._lock:
            if self._zc is not None:
                return
            info = self._build_info()
            zc = Zeroconf(ip_version=IPVersion.V4Only)
            zc.register_service(info)
            self._zc = zc
            self._info = info
        logger.info('mDNS: advertising %s on port %d', info.name, self.port)

    def update(self, txt: Dict[str, str]) -> None:
        with self._lock:
            if self._zc is None:
                return
            self.txt.update({k: str(v) for k, v in (txt or {}).items()})
            info = self._build_info()
            self._zc.update_service(info)
            self._info = info

    def stop(self) -> None:
        with self._lock:
            if self._zc is None or self._info is None:
                return
            try:
                self._zc.unregister_service(self._info)
            finally:
                self._zc.close()
                self._zc = None
                self._info = None
        logger.info('mDNS: advertisement withdrawn')
