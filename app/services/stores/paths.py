from app.core.tenant import normalize_agency_id


_FORBIDDEN = ("/", "\\")


def _segment(value: str, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned or cleaned in {".", ".."} or any(ch in cleaned for ch in _FORBIDDEN):
        raise ValueError(f"Invalid {label}: {value!r}")
    return cleaned


class DocumentPaths:
    """Document-store paths; every path is rooted at its agency."""

    @staticmethod
    def agency(agency_id: str) -> str:
        return f"agencies/{normalize_agency_id(agency_id)}"

    @staticmethod
    def loan(agency_id: str, loan_id: str) -> str:
        return f"{DocumentPaths.agency(agency_id)}/loans/{_segment(loan_id, 'loan_id')}"

    @staticmethod
    def loan_audit_logs(agency_id: str, loan_id: str) -> str:
        return f"{DocumentPaths.loan(agency_id, loan_id)}/audit_logs"
