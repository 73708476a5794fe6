"""
Identity reconciliation: create a new identity (plus its credential) or update the
existing one matched by (tenant_id, email).
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Optional, Tuple, TypeVar
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from app.core.enums import IMPORT_TYPE_ROLE, ImportType, RowStep
from app.core.exceptions import DuplicateIdentityError, PersistenceError, ServiceError

from .credentials import KeyedLocks, UsernameAllocator, generate_default_password
from .schemas import Identity, IdentityFields, ValidatedCandidate
from .store import RosterStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (tenant_id, email) → lock; rows sharing an email are reconciled one after the other
_email_locks = KeyedLocks()


@dataclass
class ReconcileResult:
    identity: Identity
    is_new: bool
    # Username when a credential was created by this call
    username: Optional[str] = None
    credential_reset: bool = False


async def run_step(step: RowStep, awaitable: Awaitable[T]) -> T:
    """Await a store call, turning store failures into a PersistenceError naming the step."""
    try:
        return await awaitable
    except PersistenceError:
        raise
    except ServiceError as e:
        raise PersistenceError(step.value, e.message) from e
    except SQLAlchemyError as e:
        raise PersistenceError(step.value, str(e.__cause__ or e)) from e


def identity_fields(candidate: ValidatedCandidate, import_type: ImportType) -> IdentityFields:
    return IdentityFields(
        first_name=candidate.first_name,
        last_name=candidate.last_name,
        email=candidate.email,
        role=IMPORT_TYPE_ROLE[ImportType(import_type)],
        is_active=True,
        phone=candidate.phone,
        gender=candidate.gender,
        date_of_birth=candidate.date_of_birth,
        address=candidate.address,
    )


async def _create_or_find(
    store: RosterStore, tenant_id: UUID, fields: IdentityFields
) -> Tuple[Identity, bool]:
    step = RowStep.RECONCILE_IDENTITY
    try:
        return await run_step(step, store.create_identity(tenant_id, fields)), True
    except PersistenceError as e:
        if not isinstance(e.__cause__, DuplicateIdentityError):
            raise
        # Another writer created the same email in between; take the update path
        existing = await run_step(step, store.find_identity_by_email(tenant_id, fields.email))
        if existing is None:
            raise
        logger.info("Identity %s created concurrently in tenant %s; updating instead", fields.email, tenant_id)
        return existing, False


async def reconcile_identity(
    store: RosterStore,
    allocator: UsernameAllocator,
    tenant_id: UUID,
    candidate: ValidatedCandidate,
    import_type: ImportType,
    *,
    reset_credentials: bool = False,
) -> ReconcileResult:
    """
    Look up the identity by (tenant_id, email).
    - Not found: create it, then provision its credential.
    - Found: update name, role, is_active and present optional fields. The credential is
      left alone unless it is missing (a previous run stopped in between) or
      reset_credentials is set.
    Raises PersistenceError naming the failed step.
    """
    fields = identity_fields(candidate, import_type)
    async with _email_locks.get((tenant_id, fields.email)):
        existing = await run_step(
            RowStep.RECONCILE_IDENTITY, store.find_identity_by_email(tenant_id, fields.email)
        )
        is_new = False
        if existing is None:
            identity, is_new = await _create_or_find(store, tenant_id, fields)
        else:
            identity = existing
        if not is_new:
            await run_step(RowStep.RECONCILE_IDENTITY, store.update_identity(identity.id, fields))
            changes = fields.model_dump(exclude_none=True, exclude={"email"})
            changes["role"] = fields.role.value
            if fields.gender is not None:
                changes["gender"] = fields.gender.value
            identity = identity.model_copy(update=changes)

        result = ReconcileResult(identity=identity, is_new=is_new)
        step = RowStep.PROVISION_CREDENTIAL
        try:
            credential = None if is_new else await run_step(step, store.get_credential(identity.id))
            if credential is None:
                result.username, _ = await run_step(
                    step,
                    allocator.allocate(
                        store, tenant_id, identity.id, identity.first_name, identity.last_name, fields.role
                    ),
                )
            elif reset_credentials:
                await run_step(step, store.reset_credential(identity.id, generate_default_password()))
                result.credential_reset = True
        except PersistenceError as e:
            e.identity = identity
            e.identity_created = is_new
            raise
        return result
