"""Per-user memory opt-in preference.

Only callers with a verified identity token have a preference; guests always
read as opted out and cannot change it.
"""
import logging
from datetime import datetime, timezone
from typing import Callable

from starlette.requests import Request

from tripp.errors import LoginRequired
from tripp.identity import IdentityResolver, Resolved
from tripp.models import MemoryPreference

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryPreferences:
    def __init__(self, resolver: IdentityResolver, store, clock: Callable[[], datetime] = _utcnow):
        self.resolver = resolver
        self.store = store
        self._clock = clock

    def read(self, request: Request) -> MemoryPreference:
        user = self.resolver.resolve_user(request)
        if not isinstance(user, Resolved):
            return MemoryPreference(authenticated=False, memory_opt_in=False)
        return MemoryPreference(
            authenticated=True,
            memory_opt_in=self.store.get_memory_opt_in(user.user_id),
        )

    def update(self, request: Request, on: bool) -> MemoryPreference:
        """Store the caller's choice.

        Raises:
            LoginRequired: the caller has no verified identity token
        """
        user = self.resolver.resolve_user(request)
        if not isinstance(user, Resolved):
            raise LoginRequired()
        self.store.set_memory_opt_in(user.user_id, on, self._clock())
        logger.info("Memory opt-in for user %s set to %s", user.user_id, on)
        return MemoryPreference(authenticated=True, memory_opt_in=on)
