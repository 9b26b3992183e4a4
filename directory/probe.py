"""
directory/probe.py -- Raw TCP reachability checks and endpoint auto-discovery.

probe() is the cheap pre-flight gate run before any protocol handshake: if
the directory port does not accept a TCP connection within the timeout, a
bind attempt would only burn its own (much longer) connect timeout.

EndpointDiscovery uses the same predicate to fall back across a configured
list of candidate endpoints. The cooldown timestamp lives on the instance and
time comes from an injected clock, so tests control both.
"""

from __future__ import annotations

import logging
import socket
import time
from collections.abc import Callable, Sequence

from directory.models import DirectoryEndpoint

logger = logging.getLogger("dirsync.directory.probe")

Prober = Callable[[str, int, float], bool]


def probe(host: str, port: int, timeout: float) -> bool:
    """Return True if host:port accepts a TCP connection within timeout seconds.

    Any connection error (refused, unreachable, DNS failure, timeout) yields
    False. The socket is closed immediately; nothing is sent over it.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as exc:
        logger.debug("TCP probe to %s:%d failed: %s", host, port, exc)
        return False


class EndpointDiscovery:
    """Fall back to the first reachable candidate when the active endpoint is down.

    Usage:
        discovery = EndpointDiscovery(candidates, cooldown=300, timeout=5.0)
        endpoint = discovery.resolve(endpoint)

    A scan is recorded only when the active endpoint actually failed its
    probe. While the cooldown window since the last scan is open, resolve()
    returns the endpoint it was given without probing anything.
    """

    def __init__(
        self,
        candidates: Sequence[DirectoryEndpoint],
        cooldown: float,
        timeout: float,
        prober: Prober = probe,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.candidates = list(candidates)
        self.cooldown = cooldown
        self.timeout = timeout
        self._prober = prober
        self._clock = clock
        self._last_scan: float | None = None

    @property
    def in_cooldown(self) -> bool:
        if self._last_scan is None:
            return False
        return self._clock() - self._last_scan < self.cooldown

    def resolve(self, current: DirectoryEndpoint) -> DirectoryEndpoint:
        """Return `current` if reachable, else the first reachable candidate.

        Returns `current` unchanged when discovery is cooling down, when no
        candidates are configured, or when every candidate fails too.
        """
        if not self.candidates or self.in_cooldown:
            return current
        if self._prober(current.host, current.port, self.timeout):
            return current
        return self._scan(current)

    def rescan(self, current: DirectoryEndpoint) -> DirectoryEndpoint:
        """Scan candidates for a caller that has already seen `current` fail its probe."""
        if not self.candidates:
            return current
        if self.in_cooldown:
            logger.debug("Endpoint discovery skipped (cooldown active)")
            return current
        return self._scan(current)

    def _scan(self, current: DirectoryEndpoint) -> DirectoryEndpoint:
        self._last_scan = self._clock()
        logger.warning("Directory endpoint %s unreachable, scanning %d candidates", current.url, len(self.candidates))
        for candidate in self.candidates:
            if candidate == current:
                continue
            if self._prober(candidate.host, candidate.port, self.timeout):
                logger.warning("Directory endpoint discovered: %s (was %s)", candidate.url, current.url)
                return candidate
        logger.warning("Endpoint discovery found no reachable candidate")
        return current
