"""Tests for session exchange, session status and soft sessions."""
from datetime import datetime, timedelta, timezone

import pytest

from tripp.errors import AuthError
from tripp.identity import Identity
from tripp.models import ChatSession
from tripp.sessions import SessionManager, device_fingerprint
from tripp.store import InMemorySessionStore
from tripp.utils import hash_string


class DateClock:
    def __init__(self):
        self.now = datetime(2025, 11, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class BrokenStore(InMemorySessionStore):
    def find_active_session(self, user_id, device_hash):
        raise ConnectionError("database unavailable")

    def get_session(self, session_id):
        raise ConnectionError("database unavailable")

    def insert_session(self, session):
        raise ConnectionError("database unavailable")


@pytest.fixture
def date_clock():
    return DateClock()


@pytest.fixture
def manager(verifier, store, config, date_clock):
    return SessionManager(verifier, store, config, clock=date_clock)


@pytest.fixture
def exchange_request(make_request, signing_key):
    """Request carrying a valid identity cookie; override sub, UA or address."""
    def _make(sub="42", user_agent="Mozilla/5.0", ip="203.0.113.9", **claims):
        return make_request(
            headers={"User-Agent": user_agent},
            cookies={"HH_ID_TOKEN": signing_key.sign(sub=sub, **claims)},
            path="/api/auth/exchange",
            client=(ip, 50000),
        )
    return _make


class TestDeviceFingerprint:
    """Tests for device hashing."""

    def test_composition(self):
        fp = device_fingerprint("UA", "198.51.100.23")
        assert fp.ua_hash == hash_string("UA")
        assert fp.ip_hash == hash_string("198.51.100.0")
        assert fp.device_hash == hash_string(f"{fp.ua_hash}:{fp.ip_hash}")

    def test_same_network_same_device(self):
        assert device_fingerprint("UA", "10.1.2.3").device_hash == device_fingerprint("UA", "10.1.2.200").device_hash

    def test_different_agent_different_device(self):
        assert device_fingerprint("A", "10.1.2.3").device_hash != device_fingerprint("B", "10.1.2.3").device_hash

    def test_missing_inputs(self):
        fp = device_fingerprint(None, None)
        assert fp.ua_hash == hash_string("")
        assert fp.ip_hash == hash_string("0.0.0")


class TestExchange:
    """Tests for exchanging the identity cookie for a session."""

    def test_new_session_is_stored(self, manager, store, exchange_request, date_clock, signing_key):
        """A first exchange inserts a session carrying token metadata."""
        result = manager.exchange(exchange_request(tier="pro"))

        assert result.reused is False
        assert result.user_id == "42"
        assert result.tier == "pro"
        assert result.expires_at == date_clock() + timedelta(minutes=1440)
        assert len(result.session_id) == 32

        row = store.get_session(result.session_id)
        assert row.user_id == "42"
        assert row.client_id == "webchat"
        assert row.jti == "jti-1"
        assert row.kid == signing_key.kid
        assert row.iss == "https://herphut.test"
        assert row.aud == "tripp"
        assert row.revoked_at is None

    def test_tier_defaults_to_free(self, manager, exchange_request):
        assert manager.exchange(exchange_request()).tier == "free"

    def test_same_device_reuses_session(self, manager, store, exchange_request, date_clock):
        """A second exchange from the same device refreshes the existing row."""
        first = manager.exchange(exchange_request())
        date_clock.advance(minutes=10)
        second = manager.exchange(exchange_request())

        assert second.reused is True
        assert second.session_id == first.session_id
        assert len(store.sessions_for("42")) == 1

        row = store.get_session(first.session_id)
        assert row.last_seen == date_clock()
        assert row.expires_at == date_clock() + timedelta(minutes=1440)
        assert row.expires_at > first.expires_at

    def test_same_network_counts_as_same_device(self, manager, exchange_request):
        first = manager.exchange(exchange_request(ip="198.51.100.4"))
        second = manager.exchange(exchange_request(ip="198.51.100.77"))
        assert second.session_id == first.session_id

    def test_sixth_device_revokes_oldest(self, manager, store, exchange_request, date_clock):
        """Only the five newest sessions stay active."""
        issued = []
        for n in range(6):
            issued.append(manager.exchange(exchange_request(user_agent=f"device-{n}")).session_id)
            date_clock.advance(minutes=1)

        rows = store.sessions_for("42")
        active = [s.session_id for s in rows if not s.revoked]
        revoked = [s.session_id for s in rows if s.revoked]
        assert len(rows) == 6
        assert len(active) == 5
        assert revoked == [issued[0]]

    def test_revoked_session_is_not_reused(self, manager, store, exchange_request, date_clock):
        first = manager.exchange(exchange_request(user_agent="device-0"))
        for n in range(1, 6):
            date_clock.advance(minutes=1)
            manager.exchange(exchange_request(user_agent=f"device-{n}"))
        assert store.get_session(first.session_id).revoked

        date_clock.advance(minutes=1)
        again = manager.exchange(exchange_request(user_agent="device-0"))
        assert again.reused is False
        assert again.session_id != first.session_id

    def test_users_are_capped_independently(self, manager, store, exchange_request):
        for n in range(5):
            manager.exchange(exchange_request(sub="a", user_agent=f"d{n}"))
        manager.exchange(exchange_request(sub="b", user_agent="d0"))
        assert all(not s.revoked for s in store.sessions_for("a"))

    def test_missing_cookie(self, manager, make_request):
        with pytest.raises(AuthError) as exc:
            manager.exchange(make_request())
        assert exc.value.error == "missing_id_token"

    def test_invalid_token(self, manager, make_request, other_key):
        request = make_request(cookies={"HH_ID_TOKEN": other_key.sign()})
        with pytest.raises(AuthError) as exc:
            manager.exchange(request)
        assert exc.value.error == "jwt_invalid"
        assert exc.value.reason == "kid_not_found"

    def test_expired_token(self, manager, exchange_request, clock):
        now = int(clock())
        with pytest.raises(AuthError) as exc:
            manager.exchange(exchange_request(exp=now - 600, iat=now - 3600, nbf=now - 3600))
        assert (exc.value.error, exc.value.reason) == ("jwt_invalid", "exp")

    def test_empty_subject(self, manager, exchange_request):
        with pytest.raises(AuthError) as exc:
            manager.exchange(exchange_request(sub=""))
        assert exc.value.error == "sub_missing"

    def test_store_failure_is_db_error(self, verifier, config, date_clock, exchange_request):
        manager = SessionManager(verifier, BrokenStore(), config, clock=date_clock)
        with pytest.raises(AuthError) as exc:
            manager.exchange(exchange_request())
        assert exc.value.error == "db_error"


class TestStatus:
    """Tests for reporting session status."""

    def _row(self, date_clock, **overrides):
        now = date_clock()
        values = dict(
            session_id="s1",
            user_id="42",
            tier="pro",
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=1),
        )
        values.update(overrides)
        return ChatSession(**values)

    def test_live_session(self, manager, store, date_clock):
        store.insert_session(self._row(date_clock))
        status = manager.status("s1")
        assert (status.authenticated, status.user_id, status.tier) == (True, "42", "pro")
        assert status.memory_opt_in is False

    def test_reports_memory_opt_in(self, manager, store, date_clock):
        store.insert_session(self._row(date_clock))
        store.set_memory_opt_in("42", True, date_clock())
        assert manager.status("s1").memory_opt_in is True

    def test_preference_failure_keeps_session(self, manager, store, date_clock, monkeypatch):
        store.insert_session(self._row(date_clock))

        def broken(user_id):
            raise ConnectionError("down")

        monkeypatch.setattr(store, "get_memory_opt_in", broken)
        status = manager.status("s1")
        assert (status.authenticated, status.memory_opt_in) == (True, False)

    def test_no_session_id(self, manager):
        assert manager.status(None).authenticated is False

    def test_unknown_session(self, manager):
        assert manager.status("nope").authenticated is False

    def test_revoked_session(self, manager, store, date_clock):
        store.insert_session(self._row(date_clock, revoked_at=date_clock()))
        assert manager.status("s1").authenticated is False

    def test_expired_session(self, manager, store, date_clock):
        store.insert_session(self._row(date_clock))
        date_clock.advance(hours=2)
        assert manager.status("s1").authenticated is False

    def test_guest_session(self, manager, store, date_clock):
        store.insert_session(self._row(date_clock, user_id=None, tier="guest"))
        assert manager.status("s1").authenticated is False

    def test_store_failure(self, verifier, config, date_clock):
        manager = SessionManager(verifier, BrokenStore(), config, clock=date_clock)
        assert manager.status("s1").authenticated is False


class TestAnonymousSessions:
    """Tests for soft session creation."""

    def test_guest_row(self, manager, store, make_request, date_clock):
        identity = Identity(user_id=None, client_id="widget", session_id=None)
        session_id, stored = manager.create_anonymous(identity, make_request())

        assert stored is True
        row = store.get_session(session_id)
        assert row.user_id is None
        assert row.tier == "guest"
        assert row.client_id == "widget"
        assert row.expires_at == date_clock() + timedelta(minutes=60)

    def test_signed_in_caller_is_capped(self, manager, store, make_request, date_clock):
        identity = Identity(user_id="42", client_id="webchat", session_id=None)
        for n in range(6):
            manager.create_anonymous(identity, make_request(headers={"User-Agent": f"d{n}"}))
            date_clock.advance(minutes=1)
        assert len([s for s in store.sessions_for("42") if not s.revoked]) == 5

    def test_store_failure_still_returns_id(self, verifier, config, make_request, date_clock):
        manager = SessionManager(verifier, BrokenStore(), config, clock=date_clock)
        identity = Identity(user_id=None, client_id="webchat", session_id=None)
        session_id, stored = manager.create_anonymous(identity, make_request())
        assert stored is False
        assert len(session_id) == 32
