import asyncio
import logging

from torrentstream.errors import SessionNotFoundError

logger = logging.getLogger(__name__)


async def expire_unselected_session(orchestrator, session_id, idle_timeout):
    """
    Destroys a listed session if no file has been selected once the idle
    window has passed. Selection cancels this task; the predicate also
    guards the case where selection lands just as the timer fires.
    """
    await asyncio.sleep(idle_timeout)
    destroyed = await orchestrator.teardown(
        session_id,
        reason="idle timeout",
        only_if=lambda s: not s.selected,
    )
    if destroyed:
        logger.info(f"Session {session_id} expired after {idle_timeout:g}s without a selection")


async def sample_metrics(orchestrator, session_id, interval):
    """
    Periodically copies the engine's counters into the session snapshot and
    tears the session down once anything it streams through has failed.
    A failed sample is logged and the loop carries on, so a transient engine
    error never stops failure detection.
    """
    registry = orchestrator.registry
    while True:
        await asyncio.sleep(interval)
        try:
            session = registry.get(session_id)
        except SessionNotFoundError:
            return

        try:
            stats = session.engine.stats()
            registry.update(session_id, lambda s: setattr(s, "metrics", stats))
        except SessionNotFoundError:
            return
        except Exception as e:
            logger.error(f"Could not sample metrics for session {session_id}: {e}", exc_info=True)

        try:
            reason = get_failure_reason(session)
        except Exception as e:
            logger.error(f"Could not check health of session {session_id}: {e}", exc_info=True)
            continue

        if reason:
            logger.error(f"Session {session_id} failed while streaming ({reason})")
            await orchestrator.teardown(session_id, reason=reason)
            return


def get_failure_reason(session):
    """Returns why a streaming session must be torn down, or None if it is healthy."""
    engine_error = session.engine.error
    if engine_error:
        return f"engine error: {engine_error}"
    if session.source_error:
        return f"source read failed: {session.source_error}"
    returncode = session.packager.returncode if session.packager else None
    if returncode:
        return f"packager exited with code {returncode}: {session.packager.error_output[-200:]}"
    return None
