import threading

import pytest

from torrentstream.errors import SessionNotFoundError
from torrentstream.models import MediaFileRef, SessionState, SwarmStats
from torrentstream.registry import SessionRegistry

FILES = [MediaFileRef(index=0, name="movie.mp4", length=100, path="movie.mp4")]


def test_create_and_get_returns_snapshot():
    registry = SessionRegistry()
    session_id = registry.create("magnet:?xt=1", engine=object(), files=FILES)

    snapshot = registry.get(session_id)
    assert snapshot.session_id == session_id
    assert snapshot.state is SessionState.LISTED
    assert snapshot.selected is False

    snapshot.selected = True
    assert registry.get(session_id).selected is False


def test_get_unknown_raises():
    with pytest.raises(SessionNotFoundError):
        SessionRegistry().get("missing")


def test_update_applies_mutation_and_returns_result():
    registry = SessionRegistry()
    session_id = registry.create("magnet:?xt=1", engine=object(), files=FILES)

    def select(session):
        session.selected = True
        return "done"

    assert registry.update(session_id, select) == "done"
    assert registry.get(session_id).selected is True

    with pytest.raises(SessionNotFoundError):
        registry.update("missing", select)


def test_destroy_is_idempotent():
    registry = SessionRegistry()
    session_id = registry.create("magnet:?xt=1", engine=object(), files=FILES)

    removed = registry.destroy(session_id)
    assert removed.session_id == session_id
    assert removed.state is SessionState.TEARING_DOWN
    assert session_id not in registry

    assert registry.destroy(session_id) is None
    assert registry.destroy("never-created") is None
    with pytest.raises(SessionNotFoundError):
        registry.get(session_id)


def test_destroy_only_if_predicate_holds():
    registry = SessionRegistry()
    session_id = registry.create("magnet:?xt=1", engine=object(), files=FILES)
    registry.update(session_id, lambda s: setattr(s, "selected", True))

    assert registry.destroy(session_id, only_if=lambda s: not s.selected) is None
    assert session_id in registry
    assert registry.destroy(session_id, only_if=lambda s: s.selected) is not None


def test_session_ids_are_never_reused():
    registry = SessionRegistry()
    seen = set()
    for _ in range(200):
        session_id = registry.create("magnet:?xt=1", engine=object(), files=FILES)
        assert session_id not in seen
        seen.add(session_id)
        registry.destroy(session_id)
    assert len(registry) == 0


def test_concurrent_updates_are_atomic():
    registry = SessionRegistry()
    session_id = registry.create("magnet:?xt=1", engine=object(), files=FILES)

    def bump(session):
        session.metrics = SwarmStats(bytes_downloaded=session.metrics.bytes_downloaded + 1)

    def worker():
        for _ in range(500):
            registry.update(session_id, bump)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert registry.get(session_id).metrics.bytes_downloaded == 4000
