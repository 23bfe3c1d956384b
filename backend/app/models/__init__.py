"""SQLAlchemy models for the agent commission service."""

from app.models.commission import (
    CommissionRate,
    CommissionBatch,
    CommissionTransaction,
    ProductType,
    CommissionType,
    CommissionStatus,
    BatchStatus,
)
from app.models.statement import (
    TrialStatement,
    FinalStatement,
    TrialStatementStatus,
    FinalStatementStatus,
)
from app.models.disbursement import (
    Disbursement,
    DisbursementMode,
    DisbursementStatus,
    PaymentFailureReason,
)
from app.models.clawback import (
    Clawback,
    ClawbackRecovery,
    ClawbackStatus,
    ClawbackReason,
    RecoverySchedule,
    RecoveryStatus,
)
from app.models.suspense import (
    SuspenseAccount,
    SuspenseTransaction,
    SuspenseStatus,
    SuspenseReason,
    SuspensePriority,
    SuspenseTransactionType,
)
from app.models.error_log import ErrorLog, ErrorSeverity

__all__ = [
    "CommissionRate",
    "CommissionBatch",
    "CommissionTransaction",
    "ProductType",
    "CommissionType",
    "CommissionStatus",
    "BatchStatus",
    "TrialStatement",
    "FinalStatement",
    "TrialStatementStatus",
    "FinalStatementStatus",
    "Disbursement",
    "DisbursementMode",
    "DisbursementStatus",
    "PaymentFailureReason",
    "Clawback",
    "ClawbackRecovery",
    "ClawbackStatus",
    "ClawbackReason",
    "RecoverySchedule",
    "RecoveryStatus",
    "SuspenseAccount",
    "SuspenseTransaction",
    "SuspenseStatus",
    "SuspenseReason",
    "SuspensePriority",
    "SuspenseTransactionType",
    "ErrorLog",
    "ErrorSeverity",
]
