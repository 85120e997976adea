"""
Deciding when a torrent is ready to be packaged.

Two waits live here. ``wait_for_discovery`` bounds the metadata phase: the
engine has been handed a magnet link and must produce a file table before
the deadline. ``ReadinessGate`` runs after a file is selected. It polls the
engine's counters until real bytes arrive. While the swarm looks dead (no
peers and no data) it spends a small budget of re-announces, then gives up.

Both waits are plain coroutines, so cancelling the task that awaits them
aborts them at the next sleep.
"""
import asyncio
import logging

from torrentstream.config import (
    DISCOVERY_TIMEOUT_SECONDS,
    READINESS_POLL_SECONDS,
    READINESS_RETRY_BUDGET,
    READINESS_TIMEOUT_SECONDS,
)
from torrentstream.errors import (
    AcquisitionError,
    NoPeersError,
    ReadinessTimeoutError,
    StreamerError,
)
from torrentstream.models import SwarmStats

logger = logging.getLogger(__name__)


async def wait_for_discovery(engine, timeout=DISCOVERY_TIMEOUT_SECONDS):
    """Starts the engine and waits for its file table."""
    try:
        await asyncio.wait_for(engine.start(), timeout=timeout)
    except asyncio.TimeoutError:
        raise AcquisitionError(f"Timed out after {timeout:g}s waiting for torrent metadata") from None
    except StreamerError:
        raise
    except Exception as e:
        raise AcquisitionError(f"Failed to get files from torrent: {e}") from e


class ReadinessGate:
    def __init__(
        self,
        poll_interval=READINESS_POLL_SECONDS,
        retry_budget=READINESS_RETRY_BUDGET,
        timeout=READINESS_TIMEOUT_SECONDS,
    ):
        self.poll_interval = poll_interval
        self.retry_budget = retry_budget
        self.timeout = timeout

    async def wait(self, engine, on_poll=None):
        """
        Resolves with the first stats that show downloaded bytes.

        Raises NoPeersError when the swarm is still stalled after the retry
        budget is spent, and ReadinessTimeoutError when the overall deadline
        passes first. ``on_poll`` receives every sample.
        """
        last = {"stats": SwarmStats()}
        try:
            return await asyncio.wait_for(self._poll(engine, on_poll, last), timeout=self.timeout)
        except asyncio.TimeoutError:
            stats = last["stats"]
            raise ReadinessTimeoutError(
                f"Timeout waiting for data after {self.timeout:g}s",
                diagnostics=stats.as_dict(),
            ) from None

    async def _poll(self, engine, on_poll, last):
        retries = 0
        while True:
            stats = engine.stats()
            last["stats"] = stats
            if on_poll is not None:
                on_poll(stats)

            if stats.bytes_downloaded > 0:
                logger.info(f"Readiness reached: {stats.bytes_downloaded} bytes from {stats.peer_count} peers")
                return stats

            if stats.peer_count == 0:
                if retries >= self.retry_budget:
                    raise NoPeersError(
                        f"No peers found after {retries} retries",
                        diagnostics=dict(stats.as_dict(), retries=retries),
                    )
                retries += 1
                logger.info(f"No peers yet, re-announcing ({retries}/{self.retry_budget})")
                engine.reannounce()
            else:
                logger.debug(f"Connected to {stats.peer_count} peers, waiting for data")

            await asyncio.sleep(self.poll_interval)
