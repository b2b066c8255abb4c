from unittest.mock import MagicMock

import pytest

from qodo_acp.errors import SessionNotFoundError
from qodo_acp.session_registry import Session, SessionRegistry


def test_create_generates_unique_ids():
    registry = SessionRegistry()

    first = registry.create()
    second = registry.create()

    assert first.id != second.id
    assert set(registry.ids()) == {first.id, second.id}


def test_create_with_caller_supplied_id():
    registry = SessionRegistry()

    session = registry.create("my-session")

    assert session.id == "my-session"
    assert registry.create("my-session") is session
    assert len(registry) == 1


def test_new_session_is_idle():
    session = Session(id="s")

    assert session.cancelled is False
    assert session.active_process is None
    assert session.is_active is False


def test_attach_and_detach_drive_is_active():
    session = Session(id="s")
    process = MagicMock()

    session.attach(process)
    assert session.is_active is True
    assert session.active_process is process

    session.detach()
    assert session.is_active is False
    assert session.active_process is None


def test_require_unknown_session():
    registry = SessionRegistry()

    with pytest.raises(SessionNotFoundError, match="missing"):
        registry.require("missing")
    assert registry.get(None) is None


def test_active_and_clear():
    registry = SessionRegistry()
    idle = registry.create("idle")
    busy = registry.create("busy")
    busy.attach(MagicMock())

    assert registry.active() == [busy]
    assert "idle" in registry and idle in list(registry)

    registry.clear()

    assert registry.ids() == []
