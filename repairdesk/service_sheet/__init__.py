from repairdesk.service_sheet.api import router
from repairdesk.service_sheet.diff import FieldChange, SnapshotDiff, UpdatedItem, diff_snapshots
from repairdesk.service_sheet.errors import (
    LeadNotFoundError,
    LineItemNotFoundError,
    MissingInstrumentReferenceError,
    MissingPartNameError,
    MissingServiceReferenceError,
    NotFoundError,
    ServiceSheetError,
    TrayNotFoundError,
    UnknownPipelineError,
    UnknownServiceError,
    UnresolvedDepartmentError,
)
from repairdesk.service_sheet.pricing import SheetTotals, compute_totals
from repairdesk.service_sheet.schemas import (
    InstrumentCatalogEntry,
    InstrumentLineInput,
    PartLineInput,
    PipelineCatalogEntry,
    ServiceCatalogEntry,
    ServiceLineInput,
    ServiceSheetResult,
    ServiceSheetSaveRequest,
    TrayItemRead,
)
from repairdesk.service_sheet.service import ServiceSheetService, service_sheet_service
from repairdesk.service_sheet.snapshot import SnapshotItem, to_snapshot, to_snapshots

__all__ = [
    "router",
    "FieldChange",
    "SnapshotDiff",
    "UpdatedItem",
    "diff_snapshots",
    "ServiceSheetError",
    "NotFoundError",
    "LeadNotFoundError",
    "TrayNotFoundError",
    "LineItemNotFoundError",
    "UnresolvedDepartmentError",
    "MissingServiceReferenceError",
    "UnknownServiceError",
    "MissingPartNameError",
    "MissingInstrumentReferenceError",
    "UnknownPipelineError",
    "SheetTotals",
    "compute_totals",
    "ServiceCatalogEntry",
    "InstrumentCatalogEntry",
    "PipelineCatalogEntry",
    "ServiceLineInput",
    "PartLineInput",
    "InstrumentLineInput",
    "ServiceSheetSaveRequest",
    "ServiceSheetResult",
    "TrayItemRead",
    "ServiceSheetService",
    "service_sheet_service",
    "SnapshotItem",
    "to_snapshot",
    "to_snapshots",
]
