"""Role record writer: upserts the student/teacher/staff record linked 1:1 to an identity."""

from typing import Any, Dict

from app.core.enums import ImportType, RowStep

from .reconciler import run_step
from .schemas import (
    CANDIDATE_TYPES,
    CandidateBase,
    Identity,
    StaffCandidate,
    StudentCandidate,
    TeacherCandidate,
    ValidatedCandidate,
)
from .store import RosterStore

_SHARED_FIELDS = frozenset(CandidateBase.model_fields)


def role_record_fields(candidate: ValidatedCandidate) -> Dict[str, Any]:
    """Role-only fields of a candidate (everything not stored on the identity)."""
    if not isinstance(candidate, (StudentCandidate, TeacherCandidate, StaffCandidate)):
        raise TypeError(f"Unsupported candidate type: {type(candidate).__name__}")
    return {
        name: getattr(candidate, name)
        for name in type(candidate).model_fields
        if name not in _SHARED_FIELDS
    }


async def write_role_record(
    store: RosterStore,
    identity: Identity,
    candidate: ValidatedCandidate,
    import_type: ImportType,
) -> Dict[str, Any]:
    """Upsert by identity id, so re-importing the same person never duplicates the record."""
    import_type = ImportType(import_type)
    if not isinstance(candidate, CANDIDATE_TYPES[import_type]):
        raise ValueError(
            f"{type(candidate).__name__} cannot be written as a {import_type.value} role record"
        )
    fields = role_record_fields(candidate)
    await run_step(RowStep.WRITE_ROLE_RECORD, store.upsert_role_record(identity.id, import_type, fields))
    return fields
