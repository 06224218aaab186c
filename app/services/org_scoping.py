from __future__ import annotations

from sqlalchemy.orm import InstrumentedAttribute
from sqlalchemy.sql import Select


def apply_agency_filter(stmt: Select, agency_id: str, *columns: InstrumentedAttribute) -> Select:
    if not columns:
        raise ValueError("apply_agency_filter requires at least one agency-scoped column")
    if not agency_id:
        raise ValueError("apply_agency_filter requires an agency_id")
    return stmt.where(*[col == agency_id for col in columns])
