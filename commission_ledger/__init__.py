"""
Commission Ledger & Settlement Engine

This module provides:
- Commission lifecycle: pending → processed → paid, with refund/fraud/duplicate/cancel exits
- Link and program rollup counters kept in step with every transition
- Payout aggregation, withdrawal and settlement
- Balance aggregates per workspace, program or partner set
- Exactly-once claiming of phone-number commission splits
- Audited admin corrections
"""

from .errors import (
    ConflictError,
    InternalLedgerError,
    InvalidPayoutAmountError,
    InvalidStateTransitionError,
    LedgerServiceError,
    LedgerValidationError,
    MissingProgramError,
    NotFoundError,
)
from .models import (
    Balances,
    ByPartnerIds,
    ByProgram,
    ByWorkspace,
    ClaimResult,
    Commission,
    CommissionFilters,
    CommissionSplit,
    CommissionStatus,
    CommissionType,
    Granularity,
    Payout,
    PayoutStatus,
    TimeseriesPoint,
)
from .service import LedgerService
from .state_machine import is_valid_status

__all__ = [
    "Balances",
    "ByPartnerIds",
    "ByProgram",
    "ByWorkspace",
    "ClaimResult",
    "Commission",
    "CommissionFilters",
    "CommissionSplit",
    "CommissionStatus",
    "CommissionType",
    "Granularity",
    "Payout",
    "PayoutStatus",
    "TimeseriesPoint",
    "LedgerService",
    "is_valid_status",
    "ConflictError",
    "InternalLedgerError",
    "InvalidPayoutAmountError",
    "InvalidStateTransitionError",
    "LedgerServiceError",
    "LedgerValidationError",
    "MissingProgramError",
    "NotFoundError",
]
