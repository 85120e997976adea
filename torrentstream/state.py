from torrentstream.orchestrator import StreamOrchestrator
from torrentstream.packager import HlsPackager

# --- In-memory State ---
# The orchestrator owns the session registry, the only mutable state the
# service keeps. Nothing is persisted; a restart starts from an empty table.
orchestrator = None


def get_orchestrator():
    """Returns the global orchestrator, creating it if it doesn't exist."""
    global orchestrator
    if orchestrator is None:
        from torrentstream.engine import LibtorrentEngine
        orchestrator = StreamOrchestrator(
            engine_factory=LibtorrentEngine,
            packager_factory=HlsPackager,
        )
    return orchestrator


async def shutdown_orchestrator():
    """Tears down every session, if the orchestrator was ever created."""
    global orchestrator
    if orchestrator is not None:
        await orchestrator.shutdown()
        orchestrator = None
