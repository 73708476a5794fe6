"""
Row validation: ImportRow → typed candidate (StudentCandidate / TeacherCandidate / StaffCandidate).

Raw rows never pass this boundary untyped. A failing row raises exactly one
RowValidationError (the first failing field in declaration order).
"""

from typing import Dict, Tuple, Type

from pydantic import BaseModel, ValidationError

from app.core.enums import ImportType
from app.core.exceptions import RowValidationError

from .schemas import CANDIDATE_TYPES, ImportRow, ValidatedCandidate

# Columns every roster type must carry (non-blank)
REQUIRED_COLUMNS = ("first_name", "last_name", "email")


def normalize_header(name: str) -> str:
    """'First Name' / 'first-name' / ' FIRST_NAME ' → 'first_name'."""
    return (str(name).strip().lower() if name is not None else "").replace(" ", "_").replace("-", "_")


def columns_for(import_type: ImportType) -> Tuple[str, ...]:
    """Column names accepted for an import type, in template order."""
    return tuple(CANDIDATE_TYPES[ImportType(import_type)].model_fields.keys())


def _known_fields(row: ImportRow, model: Type[BaseModel]) -> Dict[str, str]:
    normalized = {}
    for header, value in row.raw_fields.items():
        key = normalize_header(header)
        # First non-blank occurrence wins when two headers normalize the same way
        if key and value and key not in normalized:
            normalized[key] = value
    return {name: normalized[name] for name in model.model_fields if name in normalized}


def _first_error(exc: ValidationError, model: Type[BaseModel]) -> Tuple[str, str]:
    order = {name: i for i, name in enumerate(model.model_fields)}
    errors = exc.errors()
    err = min(errors, key=lambda e: order.get(str(e["loc"][0]) if e["loc"] else "", len(order)))
    field = str(err["loc"][0]) if err["loc"] else None
    if err["type"] == "missing":
        return field, f"missing {field}"
    detail = err["msg"]
    if detail.startswith("Value error, "):
        detail = detail[len("Value error, "):]
    return field, f"invalid {field}: {detail}"


def validate_row(row: ImportRow, import_type: ImportType) -> ValidatedCandidate:
    """Validate one row for the given import type. Raises RowValidationError."""
    model = CANDIDATE_TYPES[ImportType(import_type)]
    data = _known_fields(row, model)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        field, reason = _first_error(e, model)
        raise RowValidationError(row.row_number, field, reason) from e
