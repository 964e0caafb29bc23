"""Session and audit persistence for the Tripp gateway.

`SupabaseSessionStore` talks to the `chat_sessions`, `audit_logs` and `user_prefs`
tables through the Supabase client. `InMemorySessionStore` implements the same
interface for local development and tests.
"""
from typing import Any, Dict, List, Optional, Protocol
from datetime import datetime
import itertools
import logging
import threading

from supabase import create_client, Client
from tripp.config import get_config
from tripp.models import AuditRecord, ChatSession

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def get_session(self, session_id: str) -> Optional[ChatSession]: ...

    def find_active_session(self, user_id: str, device_hash: str) -> Optional[ChatSession]: ...

    def insert_session(self, session: ChatSession) -> ChatSession: ...

    def touch_session(
        self,
        session_id: str,
        now: datetime,
        expires_at: datetime,
        tier: str,
        client_id: str,
    ) -> None: ...

    def revoke_excess_sessions(self, user_id: str, keep: int, now: datetime) -> int: ...

    def insert_audit(self, record: AuditRecord) -> None: ...

    def get_memory_opt_in(self, user_id: str) -> bool: ...

    def set_memory_opt_in(self, user_id: str, on: bool, now: datetime) -> None: ...


# Singleton Supabase client
_supabase_client: Optional[Client] = None


def init_supabase_client() -> Client:
    """Initialize and return Supabase client singleton.

    Returns:
        Configured Supabase client
    """
    global _supabase_client

    if _supabase_client is None:
        config = get_config()
        if not config.supabase_url or not config.supabase_service_role_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(
            config.supabase_url,
            config.supabase_service_role_key
        )
        logger.info("Supabase client initialized")

    return _supabase_client


def _serialize(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


class SupabaseSessionStore:
    """Session store backed by Supabase (Postgres)."""

    def __init__(self, client: Optional[Client] = None, config=None):
        self._client = client
        self.config = config or get_config()

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = init_supabase_client()
        return self._client

    def _sessions(self):
        return self.client.table(self.config.sessions_table)

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        try:
            result = self._sessions().select("*").eq("session_id", session_id).limit(1).execute()
        except Exception as e:
            logger.error(f"Failed to fetch session: {e}")
            raise
        return ChatSession.model_validate(result.data[0]) if result.data else None

    def find_active_session(self, user_id: str, device_hash: str) -> Optional[ChatSession]:
        """Most recently created non-revoked session for (user, device)."""
        try:
            result = (
                self._sessions()
                .select("*")
                .eq("user_id", user_id)
                .eq("device_hash", device_hash)
                .is_("revoked_at", "null")
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to look up active session: {e}")
            raise
        return ChatSession.model_validate(result.data[0]) if result.data else None

    def insert_session(self, session: ChatSession) -> ChatSession:
        record = {k: _serialize(v) for k, v in session.model_dump().items()}
        try:
            result = self._sessions().insert(record).execute()
        except Exception as e:
            logger.error(f"Failed to insert session: {e}")
            raise
        if result.data:
            return ChatSession.model_validate(result.data[0])
        return session

    def touch_session(self, session_id, now, expires_at, tier, client_id) -> None:
        try:
            self._sessions().update({
                "updated_at": now.isoformat(),
                "last_seen": now.isoformat(),
                "expires_at": expires_at.isoformat(),
                "tier": tier,
                "client_id": client_id,
            }).eq("session_id", session_id).execute()
        except Exception as e:
            logger.error(f"Failed to refresh session: {e}")
            raise

    def revoke_excess_sessions(self, user_id: str, keep: int, now: datetime) -> int:
        """Revoke all but the newest `keep` active sessions in one statement.

        Runs the `revoke_excess_sessions` Postgres function (see sql/schema.sql)
        so concurrent exchanges for the same user cannot both slip past the cap.
        """
        try:
            result = self.client.rpc(
                "revoke_excess_sessions",
                {"p_user_id": user_id, "p_keep": keep}
            ).execute()
        except Exception as e:
            logger.error(f"Failed to enforce session cap: {e}")
            raise
        revoked = result.data if isinstance(result.data, int) else 0
        if revoked:
            logger.info(f"Revoked {revoked} sessions over cap for user {user_id}")
        return revoked

    def insert_audit(self, record: AuditRecord) -> None:
        payload = {k: _serialize(v) for k, v in record.model_dump(exclude_none=True).items()}
        self.client.table(self.config.audit_table).insert(payload).execute()

    def get_memory_opt_in(self, user_id: str) -> bool:
        try:
            result = (
                self.client.table(self.config.prefs_table)
                .select("memory_opt_in")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to read memory preference: {e}")
            raise
        return bool(result.data and result.data[0].get("memory_opt_in"))

    def set_memory_opt_in(self, user_id: str, on: bool, now: datetime) -> None:
        try:
            self.client.table(self.config.prefs_table).upsert(
                {"user_id": user_id, "memory_opt_in": on, "updated_at": now.isoformat()},
                on_conflict="user_id"
            ).execute()
        except Exception as e:
            logger.error(f"Failed to save memory preference: {e}")
            raise


class InMemorySessionStore:
    """Thread-safe in-process session store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[str, ChatSession] = {}
        self._order: Dict[str, int] = {}
        self._seq = itertools.count()
        self.audit: List[AuditRecord] = []
        self.prefs: Dict[str, bool] = {}

    def _newest_first(self, rows: List[ChatSession]) -> List[ChatSession]:
        return sorted(
            rows,
            key=lambda s: (s.created_at, self._order[s.session_id]),
            reverse=True,
        )

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        with self._lock:
            row = self._rows.get(session_id)
            return row.model_copy() if row else None

    def find_active_session(self, user_id: str, device_hash: str) -> Optional[ChatSession]:
        with self._lock:
            matches = [
                s for s in self._rows.values()
                if s.user_id == user_id and s.device_hash == device_hash and not s.revoked
            ]
            newest = self._newest_first(matches)
            return newest[0].model_copy() if newest else None

    def insert_session(self, session: ChatSession) -> ChatSession:
        with self._lock:
            if session.session_id in self._rows:
                raise ValueError(f"duplicate session_id {session.session_id}")
            self._rows[session.session_id] = session.model_copy()
            self._order[session.session_id] = next(self._seq)
        return session

    def touch_session(self, session_id, now, expires_at, tier, client_id) -> None:
        with self._lock:
            row = self._rows.get(session_id)
            if row is None:
                return
            self._rows[session_id] = row.model_copy(update={
                "updated_at": now,
                "last_seen": now,
                "expires_at": expires_at,
                "tier": tier,
                "client_id": client_id,
            })

    def revoke_excess_sessions(self, user_id: str, keep: int, now: datetime) -> int:
        with self._lock:
            active = [s for s in self._rows.values() if s.user_id == user_id and not s.revoked]
            excess = self._newest_first(active)[keep:]
            for s in excess:
                self._rows[s.session_id] = s.model_copy(update={"revoked_at": now})
        return len(excess)

    def insert_audit(self, record: AuditRecord) -> None:
        with self._lock:
            self.audit.append(record)

    def get_memory_opt_in(self, user_id: str) -> bool:
        with self._lock:
            return self.prefs.get(user_id, False)

    def set_memory_opt_in(self, user_id: str, on: bool, now: datetime) -> None:
        with self._lock:
            self.prefs[user_id] = on

    def sessions_for(self, user_id: Optional[str]) -> List[ChatSession]:
        with self._lock:
            return self._newest_first([s for s in self._rows.values() if s.user_id == user_id])
