"""
Login credential generation for imported users.

Username: first.last (lowercase, alphanumeric only), with the smallest free numeric
suffix (.2, .3, ...) when the base handle is taken in the tenant.
Password: "School" + 4 random digits. A first-login placeholder, not a secret at rest.
"""

import asyncio
import logging
import re
import secrets
import unicodedata
import weakref
from typing import Hashable, Optional, Tuple
from uuid import UUID

from app.auth.models import USERNAME_MAX_LENGTH
from app.core.config import settings
from app.core.enums import IdentityRole, RowStep
from app.core.exceptions import PersistenceError, UsernameConflictError

from .store import RosterStore

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]")

# Room left for a ".N" suffix
BASE_USERNAME_MAX_LENGTH = USERNAME_MAX_LENGTH - 10


def _handle_part(value: str) -> str:
    folded = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode("ascii")
    return _NON_ALNUM.sub("", folded.lower())


def base_username(first_name: str, last_name: str, role: IdentityRole) -> str:
    """
    Base login handle from name: 'Mary-Jane', "O'Neil" → 'maryjane.oneil'; 'José' → 'jose'.
    Falls back to the role value when the name has no usable characters. Cut to
    BASE_USERNAME_MAX_LENGTH so any suffixed handle fits the username column.
    """
    parts = [p for p in (_handle_part(first_name), _handle_part(last_name)) if p]
    if not parts:
        return IdentityRole(role).value
    return ".".join(parts)[:BASE_USERNAME_MAX_LENGTH].rstrip(".")


def generate_default_password(prefix: Optional[str] = None) -> str:
    """Default password, e.g. School0427."""
    if prefix is None:
        prefix = settings.default_password_prefix
    return f"{prefix}{secrets.randbelow(10000):04d}"


class KeyedLocks:
    """asyncio.Lock per key. Locks are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


class UsernameAllocator:
    """
    Serialized username allocation per tenant.

    In-process: one lock per tenant, so two rows (or two batches) in this process never
    check the same base handle at the same time. Across processes: the store's unique
    (tenant_id, username) constraint rejects the loser, who looks again.
    """

    def __init__(self, max_attempts: Optional[int] = None) -> None:
        self._locks = KeyedLocks()
        self.max_attempts = max_attempts or settings.username_max_attempts

    async def next_free(self, store: RosterStore, tenant_id: UUID, base: str) -> str:
        """Smallest free handle: base, base.2, base.3, ..."""
        if not await store.username_exists(tenant_id, base):
            return base
        suffix = 2
        while await store.username_exists(tenant_id, f"{base}.{suffix}"):
            suffix += 1
        return f"{base}.{suffix}"

    async def allocate(
        self,
        store: RosterStore,
        tenant_id: UUID,
        identity_id: UUID,
        first_name: str,
        last_name: str,
        role: IdentityRole,
    ) -> Tuple[str, str]:
        """Pick a free username and create the identity's credential. Returns (username, password)."""
        base = base_username(first_name, last_name, role)
        password = generate_default_password()
        async with self._locks.get(tenant_id):
            for attempt in range(1, self.max_attempts + 1):
                username = await self.next_free(store, tenant_id, base)
                try:
                    await store.create_credential(identity_id, username, password)
                    return username, password
                except UsernameConflictError:
                    logger.info(
                        "Username %s taken concurrently in tenant %s (attempt %d/%d)",
                        username, tenant_id, attempt, self.max_attempts,
                    )
        raise PersistenceError(
            RowStep.PROVISION_CREDENTIAL.value,
            f"could not allocate a unique username from '{base}' after {self.max_attempts} attempts",
        )


default_allocator = UsernameAllocator()
