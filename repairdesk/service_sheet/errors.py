from __future__ import annotations

from typing import Any


class ServiceSheetError(Exception):
    code = "service_sheet_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnresolvedDepartmentError(ServiceSheetError):
    code = "unresolved_department"


class MissingServiceReferenceError(ServiceSheetError):
    code = "missing_service_reference"


class UnknownServiceError(ServiceSheetError):
    code = "unknown_service"


class MissingPartNameError(ServiceSheetError):
    code = "missing_part_name"


class MissingInstrumentReferenceError(ServiceSheetError):
    code = "missing_instrument_reference"


class UnknownPipelineError(ServiceSheetError):
    code = "unknown_pipeline"


class NotFoundError(ServiceSheetError):
    code = "not_found"


class LeadNotFoundError(NotFoundError):
    code = "lead_not_found"


class TrayNotFoundError(NotFoundError):
    code = "tray_not_found"


class LineItemNotFoundError(NotFoundError):
    code = "line_item_not_found"
