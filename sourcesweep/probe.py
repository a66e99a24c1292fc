from __future__ import annotations

import socket
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

from sourcesweep.errors import TransientNetworkError
from sourcesweep.log import get_logger
from sourcesweep.models import Reachability

logger = get_logger("probe")

DEFAULT_PORTS = (443, 80, 22, 3389)
DEFAULT_TIMEOUT = 0.5
DEFAULT_MAX_CONCURRENT = 50


def connect(hostname: str, port: int, timeout: float) -> None:
    try:
        sock = socket.create_connection((hostname, port), timeout=timeout)
    except OSError as e:
        raise TransientNetworkError(f"{hostname}:{port} {e}") from e
    sock.close()


def probe_host(
    hostname: str,
    ports: Iterable[int] = DEFAULT_PORTS,
    timeout: float = DEFAULT_TIMEOUT,
) -> Reachability:
    """Try each port in order; the first accepted connection wins."""
    for port in ports:
        try:
            connect(hostname, port, timeout)
        except TransientNetworkError as e:
            logger.debug("probe failed: %s", e)
            continue
        return Reachability.REACHABLE
    return Reachability.UNREACHABLE


def probe_hosts(
    hostnames: Iterable[str],
    ports: Optional[Iterable[int]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> dict[str, Reachability]:
    """Probe every unique hostname with at most ``max_concurrent`` in flight.

    Blocks until all hosts are resolved and returns one entry per host.
    """
    unique = list(dict.fromkeys(hostnames))
    if not unique:
        return {}
    port_list = list(ports) if ports is not None else list(DEFAULT_PORTS)
    workers = max(1, min(max_concurrent, len(unique)))

    logger.info("Probing %d hosts (max %d concurrent)", len(unique), workers)
    start = time.monotonic()
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as pool:
        outcomes = pool.map(lambda host: probe_host(host, port_list, timeout), unique)
        results = dict(zip(unique, outcomes))

    reachable = sum(1 for r in results.values() if r is Reachability.REACHABLE)
    logger.info(
        "Probe finished in %.1fs: %d/%d hosts reachable",
        time.monotonic() - start, reachable, len(unique),
    )
    return results
