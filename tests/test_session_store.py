from datetime import timedelta

import pytest

from sellerpulse.services.session_store import (
    InMemorySessionStore,
    SessionAccessDeniedError,
    SessionNotFoundError,
    generate_title,
    require_owned_session,
)


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


def test_generate_title_strips_request_prefix() -> None:
    """Leading request phrases are dropped and the rest is capitalised."""
    assert generate_title("show me sales for last month") == "Sales for last month"
    assert generate_title("What are my top SKUs") == "My top SKUs"


def test_generate_title_truncates_and_falls_back() -> None:
    """Long titles are cut and blank ones fall back to the default."""
    title = generate_title("x" * 80)
    assert title == "X" + "x" * 49 + "..."
    assert generate_title("   ") == "New Chat"
    assert generate_title("show me") == "New Chat"


@pytest.mark.asyncio
async def test_create_and_get_session(store: InMemorySessionStore) -> None:
    """A new session is empty and owned by its creator."""
    sid = await store.create_session("alice")
    assert sid.startswith("session_")
    session = await store.get_session(sid)
    assert session is not None
    assert session.user_id == "alice"
    assert session.title == "New Chat"
    assert session.messages == []


@pytest.mark.asyncio
async def test_add_message_sets_title_from_first_user_message(store: InMemorySessionStore) -> None:
    """The first user message names the session."""
    sid = await store.create_session("alice")
    assert await store.add_message(sid, "user", "show me inventory") is True
    assert await store.add_message(sid, "assistant", "Here it is") is True
    session = await store.get_session(sid)
    assert session.title == "Inventory"
    assert [m.role for m in session.messages] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_add_message_unknown_session_is_noop(store: InMemorySessionStore) -> None:
    """Appending to an unknown session does nothing."""
    assert await store.add_message("nope", "user", "hi") is False
    assert await store.get_session("nope") is None


@pytest.mark.asyncio
async def test_updated_at_strictly_increases(store: InMemorySessionStore) -> None:
    """Appends advance updated_at and message timestamps are monotonic."""
    sid = await store.create_session("alice")
    session = await store.get_session(sid)
    before = session.updated_at
    for i in range(20):
        await store.add_message(sid, "user", f"m{i}")
    stamps = [m.timestamp for m in session.messages]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))
    assert session.updated_at > before


@pytest.mark.asyncio
async def test_list_sessions_is_per_user_and_most_recent_first(store: InMemorySessionStore) -> None:
    """Listing shows only the caller's sessions, newest first."""
    first = await store.create_session("alice")
    second = await store.create_session("alice")
    await store.create_session("bob")
    await store.add_message(first, "user", "bump")

    listed = await store.list_sessions("alice")
    assert [s.id for s in listed] == [first, second]
    assert [s.id for s in await store.list_sessions("carol")] == []


@pytest.mark.asyncio
async def test_delete_and_clear(store: InMemorySessionStore) -> None:
    """Delete removes one session; clear removes all of a user's sessions."""
    a1 = await store.create_session("alice")
    await store.create_session("alice")
    b1 = await store.create_session("bob")

    assert await store.delete_session(a1) is True
    assert await store.delete_session(a1) is False
    assert await store.clear_sessions("alice") == 1
    assert await store.list_sessions("alice") == []
    assert await store.get_session(b1) is not None


@pytest.mark.asyncio
async def test_cleanup_removes_stale_sessions(store: InMemorySessionStore) -> None:
    """Sessions idle past the cutoff are removed."""
    old = await store.create_session("alice")
    fresh = await store.create_session("alice")
    session = await store.get_session(old)
    session.updated_at = session.updated_at - timedelta(days=31)

    assert await store.cleanup(30) == 1
    assert await store.get_session(old) is None
    assert await store.get_session(fresh) is not None


@pytest.mark.asyncio
async def test_require_owned_session(store: InMemorySessionStore) -> None:
    """Missing sessions raise not-found and foreign ones raise access denied."""
    sid = await store.create_session("alice")
    session = await require_owned_session(store, sid, "alice")
    assert session.id == sid

    with pytest.raises(SessionAccessDeniedError):
        await require_owned_session(store, sid, "bob")
    with pytest.raises(SessionNotFoundError):
        await require_owned_session(store, "missing", "alice")
