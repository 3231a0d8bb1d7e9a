"""
Source Poller

Reads the sources of one slave, each on its own repeating timer.

Timers exist only while the slave is connected. Every tick performs one
read sized by the source type. A failed read is logged and the source is
polled again after its current interval: there is no retry inside a tick
and no backoff.
"""

from functools import partial
from typing import Any, Callable

from ...common.exceptions import ReadFailureError
from ...common.logging_setup import get_service_logger, log_source_read
from ...common.scheduler import PollTimer
from .source import Source

logger = get_service_logger("device.poller")


class SourcePoller:
    """
    Poll timers of one slave, keyed by source address.

    Timers must be disarmed before the client is closed and before the
    source or slave they reference is released.
    """

    def __init__(
        self,
        slave_name: str,
        on_connection_lost: Callable[[], None],
    ):
        self.slave_name = slave_name
        self._on_connection_lost = on_connection_lost
        self._client: Any = None
        self._timers: dict[int, PollTimer] = {}
        self._failures: dict[int, int] = {}

    def attach(self, client: Any) -> None:
        """Use `client` for every following read"""
        self._client = client

    def detach(self) -> None:
        self._client = None

    def arm(self, source: Source) -> None:
        """Read a source now, then every interval. No-op when already armed."""
        if source.address in self._timers:
            return

        timer = PollTimer(
            interval=lambda: source.interval_ms / 1000,
            callback=partial(self._poll, source),
            name=f"{self.slave_name}:{source.group}",
            fire_immediately=True,
        )
        self._timers[source.address] = timer
        self._failures[source.address] = 0
        timer.start()

    def disarm(self, address: int) -> bool:
        """Cancel the timer of one source (and a read in progress)"""
        timer = self._timers.pop(address, None)
        self._failures.pop(address, None)
        if timer is None:
            return False

        timer.stop()
        return True

    def disarm_all(self) -> None:
        for address in list(self._timers):
            self.disarm(address)

    def is_armed(self, address: int) -> bool:
        return address in self._timers

    @property
    def armed_count(self) -> int:
        return len(self._timers)

    async def _poll(self, source: Source) -> None:
        """One tick: read, decode, update"""
        client = self._client
        if client is None:
            return

        try:
            value = await client.read_value(source.address, source.source_type)
        except ReadFailureError as e:
            if source.address in self._failures:
                self._failures[source.address] += 1
            log_source_read(
                logger,
                self.slave_name,
                source.address,
                None,
                success=False,
                error=e.message,
            )
            if e.connection_lost:
                self._on_connection_lost()
            return

        if source.address in self._failures:
            self._failures[source.address] = 0
        log_source_read(logger, self.slave_name, source.address, value)
        source.set_value(value)

    def get_stats(self) -> dict:
        """Per-source timer statistics"""
        return {
            f"0x{address:04x}": {
                **timer.get_stats(),
                "consecutive_failures": self._failures.get(address, 0),
            }
            for address, timer in self._timers.items()
        }
