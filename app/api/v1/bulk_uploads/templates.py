"""Excel workbooks for bulk uploads: per-type upload template and failed-row report."""

import io
from typing import List

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.worksheet.datavalidation import DataValidation

from app.core.enums import Gender, ImportType

from .validator import REQUIRED_COLUMNS, columns_for

TEMPLATE_MAX_ROWS = 500
SHEET_TITLES = {
    ImportType.STUDENTS: "Students",
    ImportType.TEACHERS: "Teachers",
    ImportType.STAFF: "Staff",
}


def build_upload_template(import_type: ImportType) -> bytes:
    """Header row with the type's columns (required ones in bold) and a gender dropdown."""
    import_type = ImportType(import_type)
    columns = list(columns_for(import_type))

    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLES[import_type]
    ws.append(columns)
    for cell in ws[1]:
        if cell.value in REQUIRED_COLUMNS:
            cell.font = Font(bold=True)

    gender_col = columns.index("gender") + 1
    letter = ws.cell(row=1, column=gender_col).column_letter
    dv_gender = DataValidation(
        type="list",
        formula1='"' + ",".join(g.value for g in Gender) + '"',
        allow_blank=True,
    )
    dv_gender.error = "Select male, female or other"
    ws.add_data_validation(dv_gender)
    dv_gender.add(f"{letter}2:{letter}{TEMPLATE_MAX_ROWS + 1}")

    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()


def build_error_report(error_log: List[str]) -> bytes:
    """One line per error-log entry ('Row N: message' split into two columns)."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Upload errors"
    if not error_log:
        ws.append(["No failed rows"])
    else:
        ws.append(["row", "reason"])
        for entry in error_log:
            head, sep, reason = entry.partition(": ")
            if sep and head.startswith("Row ") and head[4:].isdigit():
                ws.append([int(head[4:]), reason])
            else:
                ws.append(["", entry])
    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()
