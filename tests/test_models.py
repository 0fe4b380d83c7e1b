"""Validate data models and the session store."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pydantic
import pytest

from telemd_transport.core.exceptions import ApplicationError
from telemd_transport.core.models import ApiResponse, RoomRef, SessionContext, is_success_code
from telemd_transport.core.session import (
    GROUP_CALL_URL_KEY,
    MappingStorage,
    SessionStore,
    load_session_context,
)


class TestSuccessPredicate:
    """Validate the shared success predicate."""

    @pytest.mark.parametrize("code", ["200", "100", 200, 100, " 200 "])
    def test_success(self, code):
        assert is_success_code(code)

    @pytest.mark.parametrize("code", ["500", "401", "201", "", None, "OK"])
    def test_failure(self, code):
        assert not is_success_code(code)


class TestApiResponse:
    """Validate response envelope parsing."""

    def test_numeric_code_is_normalized(self):
        response = ApiResponse.model_validate({"code": 100, "message": 5})

        assert response.code == "100"
        assert response.message == "5"
        assert response.ok

    def test_raise_for_code(self):
        response = ApiResponse(code="401", message="Unauthorized", status="failed")

        with pytest.raises(ApplicationError) as exc_info:
            response.raise_for_code()

        assert exc_info.value.code == "401"
        assert exc_info.value.message == "Unauthorized"
        assert exc_info.value.details == {"status": "failed"}

    def test_raise_for_code_returns_self_on_success(self):
        response = ApiResponse(code="200")
        assert response.raise_for_code() is response


class TestSessionContext:
    """Validate session snapshots."""

    def test_is_immutable(self, session):
        with pytest.raises(pydantic.ValidationError):
            session.user_id = "99"

    @pytest.mark.parametrize(
        "kwargs,expected",
        [
            ({"session_id": "s", "user_id": "u"}, True),
            ({"session_id": "s"}, False),
            ({"user_id": "u"}, False),
            ({}, False),
        ],
    )
    def test_is_authenticated(self, kwargs, expected):
        assert SessionContext(**kwargs).is_authenticated is expected

    def test_as_params_uses_wire_names(self):
        assert SessionContext(session_id="s", user_id="u").as_params() == {
            "session_id": "s",
            "user_id": "u",
            "organization_id": "",
        }


class TestRoomRef:
    """Validate room references."""

    @pytest.mark.parametrize(
        "base_url,expected",
        [
            ("https://meet.example/rooms/", "https://meet.example/rooms/ABC123"),
            ("https://meet.example/rooms", "https://meet.example/rooms/ABC123"),
            (None, "ABC123"),
        ],
    )
    def test_url(self, base_url, expected):
        room = RoomRef(meeting_id="ABC123", base_url=base_url)
        assert room.url == expected
        assert str(room) == expected

    def test_empty_meeting_id(self):
        with pytest.raises(pydantic.ValidationError):
            RoomRef(meeting_id="")


class TestSessionStore:
    """Validate session loading and replacement."""

    def test_load_from_storage(self):
        storage = MappingStorage(
            {
                "session_id": "sess-1",
                "userID": "42",
                "organization_Id": "7",
                GROUP_CALL_URL_KEY: "https://meet.example/rooms/",
            }
        )
        store = SessionStore()

        context = store.load(storage)

        assert context == SessionContext(session_id="sess-1", user_id="42", organization_id="7")
        assert store.current() is context
        assert store.group_call_url == "https://meet.example/rooms/"

    def test_empty_values_become_none(self):
        context = load_session_context(MappingStorage({"session_id": "", "userID": "42"}))

        assert context.session_id is None
        assert not context.is_authenticated

    def test_replace_keeps_old_snapshot_intact(self, session):
        store = SessionStore(session)
        snapshot = store.current()

        previous = store.replace(SessionContext(session_id="sess-2", user_id="99"))

        assert previous is snapshot
        assert snapshot.session_id == "sess-1"
        assert store.current().session_id == "sess-2"

    def test_clear(self, session):
        store = SessionStore(session)
        store.clear()
        assert not store.current().is_authenticated

    def test_clear_forgets_group_call_url(self, session):
        """Logging out drops the conferencing base URL with the session."""
        store = SessionStore()
        store.replace(session, group_call_url="https://meet.example/rooms/")

        store.clear()

        assert store.group_call_url is None

    def test_readers_never_see_mixed_sessions(self):
        """Concurrent replacement always yields one of the whole snapshots."""
        sessions = [SessionContext(session_id=f"s{i}", user_id=f"u{i}", organization_id=f"o{i}") for i in range(20)]
        store = SessionStore(sessions[0])
        stop = threading.Event()

        def writer():
            while not stop.is_set():
                for context in sessions:
                    store.replace(context)

        def reader():
            for _ in range(500):
                context = store.current()
                index = context.session_id[1:]
                assert context.user_id == f"u{index}"
                assert context.organization_id == f"o{index}"

        with ThreadPoolExecutor(max_workers=3) as pool:
            writing = pool.submit(writer)
            readers = [pool.submit(reader) for _ in range(2)]
            try:
                for future in readers:
                    future.result()
            finally:
                stop.set()
            writing.result()
