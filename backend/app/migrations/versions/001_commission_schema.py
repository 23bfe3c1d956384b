"""Commission lifecycle schema.

Creates: commission_rates, commission_batches, trial_statements,
final_statements, disbursements, commission_transactions, clawbacks,
clawback_recoveries, suspense_accounts, suspense_transactions, error_logs

Revision ID: 001
"""

import sqlalchemy as sa
from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

product_type = sa.Enum("PLI", "RPLI", name="producttype")
commission_type = sa.Enum("FIRST_YEAR", "RENEWAL", "BONUS", name="commissiontype")
commission_status = sa.Enum(
    "CALCULATED", "TRIAL_GENERATED", "FINALIZED", "READY_FOR_DISBURSEMENT", "DISBURSED", "CANCELLED",
    name="commissionstatus",
)
batch_status = sa.Enum(
    "INITIATED", "CALCULATING", "TRIAL_GENERATED", "COMPLETED", "FAILED", "CANCELLED",
    name="batchstatus",
)
trial_status = sa.Enum(
    "PENDING_APPROVAL", "APPROVED", "REJECTED", "CORRECTION_NEEDED", name="trialstatementstatus"
)
final_status = sa.Enum(
    "FINALIZED", "READY_FOR_DISBURSEMENT", "DISBURSED", name="finalstatementstatus"
)
disbursement_mode = sa.Enum("CHEQUE", "EFT", name="disbursementmode")
disbursement_status = sa.Enum(
    "PENDING", "PROCESSING", "SENT_TO_BANK", "COMPLETED", "FAILED", "CANCELLED",
    name="disbursementstatus",
)
failure_reason = sa.Enum(
    "INVALID_ACCOUNT", "INSUFFICIENT_FUNDS", "BANK_REJECTION", "NETWORK_ERROR", "VALIDATION_ERROR",
    name="paymentfailurereason",
)
clawback_status = sa.Enum(
    "PENDING", "IN_PROGRESS", "COMPLETED", "PARTIAL", "WAIVED", "WRITE_OFF", name="clawbackstatus"
)
clawback_reason = sa.Enum(
    "POLICY_SURRENDERED", "POLICY_LAPSED", "POLICY_CANCELLED", "FRAUD_DETECTED", "CHARGEBACK_REQUEST",
    name="clawbackreason",
)
recovery_schedule = sa.Enum("IMMEDIATE", "INSTALLMENT", name="recoveryschedule")
recovery_status = sa.Enum("SCHEDULED", "COMPLETED", "FAILED", name="recoverystatus")
suspense_status = sa.Enum("OPEN", "RESOLVED", "WRITE_OFF", name="suspensestatus")
suspense_reason = sa.Enum(
    "AGENT_NOT_FOUND", "INVALID_BANK_DETAILS", "PAYMENT_FAILED", "DOCUMENTATION_INCOMPLETE",
    "LICENSE_EXPIRED", "LICENSE_SUSPENDED", "KYC_INCOMPLETE", "DUPLICATE_PAYMENT",
    "DISPUTE_UNDER_REVIEW", "OTHER",
    name="suspensereason",
)
suspense_priority = sa.Enum("LOW", "MEDIUM", "HIGH", name="suspensepriority")
suspense_txn_type = sa.Enum(
    "CREATED", "UPDATED", "ASSIGNED", "ESCALATED", "RESOLVED", "WRITE_OFF",
    name="suspensetransactiontype",
)
error_severity = sa.Enum("INFO", "WARNING", "ERROR", "CRITICAL", name="errorseverity")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "commission_rates",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("rate_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("product_type", product_type, nullable=False),
        sa.Column("agent_type", sa.String(30), nullable=False),
        sa.Column("plan_code", sa.String(30), nullable=False),
        sa.Column("policy_term_years", sa.Integer, nullable=False),
        sa.Column("policy_duration_months", sa.Integer, nullable=True),
        sa.Column("effective_from", sa.Date, nullable=False),
        sa.Column("effective_to", sa.Date, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        *_timestamps(),
    )
    op.create_index(
        "ix_commission_rates_lookup", "commission_rates",
        ["product_type", "agent_type", "plan_code", "policy_term_years"],
    )

    op.create_table(
        "commission_batches",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("batch_number", sa.String(30), unique=True, nullable=False),
        sa.Column("month", sa.Integer, nullable=False),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("status", batch_status, nullable=False, server_default="INITIATED"),
        sa.Column("total_policies", sa.Integer, nullable=False, server_default="0"),
        sa.Column("processed_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("progress_percentage", sa.Integer, nullable=False, server_default="0"),
        sa.Column("triggered_by", sa.String(50), server_default="SYSTEM_SCHEDULER"),
        sa.Column("workflow_id", sa.String(100), nullable=True, index=True),
        sa.Column("workflow_state", sa.String(50), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sla_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sla_breached", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("estimated_completion", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        *_timestamps(),
    )
    # At most one non-terminal batch per period
    op.create_index(
        "uq_commission_batches_active_period", "commission_batches", ["month", "year"],
        unique=True,
        postgresql_where=sa.text("status IN ('INITIATED', 'CALCULATING', 'TRIAL_GENERATED')"),
    )

    op.create_table(
        "trial_statements",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("statement_number", sa.String(30), unique=True, nullable=False),
        sa.Column("batch_id", sa.Integer, sa.ForeignKey("commission_batches.id"), nullable=False, index=True),
        sa.Column("agent_id", sa.String(30), nullable=False),
        sa.Column("statement_date", sa.Date, nullable=False),
        sa.Column("from_date", sa.Date, nullable=False),
        sa.Column("to_date", sa.Date, nullable=False),
        sa.Column("total_policies", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_gross_commission", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_tds", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_net_commission", sa.Numeric(14, 2), nullable=False),
        sa.Column("undisbursed_net_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("status", trial_status, nullable=False, server_default="PENDING_APPROVAL"),
        sa.Column("approved_by", sa.String(100), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approval_remarks", sa.Text, nullable=True),
        sa.Column("processing_unit", sa.String(50), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("batch_id", "agent_id", name="uq_trial_statement_batch_agent"),
    )
    op.create_index("ix_trial_statements_status", "trial_statements", ["status"])

    op.create_table(
        "final_statements",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("statement_number", sa.String(30), unique=True, nullable=False),
        sa.Column("trial_statement_id", sa.Integer, sa.ForeignKey("trial_statements.id"),
                  unique=True, nullable=False),
        sa.Column("batch_id", sa.Integer, sa.ForeignKey("commission_batches.id"), nullable=False, index=True),
        sa.Column("agent_id", sa.String(30), nullable=False, index=True),
        sa.Column("statement_date", sa.Date, nullable=False),
        sa.Column("total_gross_commission", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_tds", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_net_commission", sa.Numeric(14, 2), nullable=False),
        sa.Column("is_partial", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("status", final_status, nullable=False, server_default="FINALIZED"),
        sa.Column("created_by", sa.String(100), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "disbursements",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("final_statement_id", sa.Integer, sa.ForeignKey("final_statements.id"),
                  nullable=False, index=True),
        sa.Column("agent_id", sa.String(30), nullable=False),
        sa.Column("mode", disbursement_mode, nullable=False),
        sa.Column("status", disbursement_status, nullable=False, server_default="PENDING"),
        sa.Column("total_gross_commission", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_tds", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_net_commission", sa.Numeric(14, 2), nullable=False),
        # Cheque
        sa.Column("cheque_number", sa.String(30), nullable=True),
        sa.Column("cheque_date", sa.Date, nullable=True),
        # EFT
        sa.Column("bank_account_number", sa.String(40), nullable=True),
        sa.Column("bank_name", sa.String(100), nullable=True),
        sa.Column("bank_branch", sa.String(100), nullable=True),
        sa.Column("ifsc_code", sa.String(11), nullable=True),
        sa.Column("account_holder_name", sa.String(200), nullable=True),
        # Payment rail
        sa.Column("payment_request_id", sa.String(60), nullable=True, unique=True),
        sa.Column("pfms_payment_id", sa.String(60), nullable=True),
        sa.Column("utr_number", sa.String(40), nullable=True),
        # SLA
        sa.Column("initiated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sla_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sla_breached", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_to_bank_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", failure_reason, nullable=True),
        sa.Column("failure_details", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("workflow_id", sa.String(100), nullable=True),
        # GL
        sa.Column("voucher_number", sa.String(40), nullable=True),
        sa.Column("posted_to_gl", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("gl_posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_by", sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_disbursements_status", "disbursements", ["status"])
    op.create_index("ix_disbursements_agent", "disbursements", ["agent_id"])

    op.create_table(
        "commission_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.Integer, sa.ForeignKey("commission_batches.id"), nullable=False, index=True),
        sa.Column("agent_id", sa.String(30), nullable=False),
        sa.Column("policy_number", sa.String(30), nullable=False),
        sa.Column("commission_type", commission_type, nullable=False),
        sa.Column("product_type", product_type, nullable=False),
        sa.Column("annualised_premium", sa.Numeric(14, 2), nullable=False),
        sa.Column("rate_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("gross_commission", sa.Numeric(14, 2), nullable=False),
        sa.Column("tds_rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("tds_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("net_commission", sa.Numeric(14, 2), nullable=False),
        sa.Column("disbursed_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("commission_date", sa.Date, nullable=False),
        sa.Column("status", commission_status, nullable=False, server_default="CALCULATED"),
        sa.Column("trial_statement_id", sa.Integer, sa.ForeignKey("trial_statements.id"),
                  nullable=True, index=True),
        sa.Column("final_statement_id", sa.Integer, sa.ForeignKey("final_statements.id"),
                  nullable=True, index=True),
        sa.Column("disbursement_id", sa.Integer, sa.ForeignKey("disbursements.id"), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "batch_id", "policy_number", "commission_type", name="uq_commission_txn_batch_policy_type"
        ),
    )
    op.create_index("ix_commission_txn_agent", "commission_transactions", ["agent_id"])
    op.create_index("ix_commission_txn_policy", "commission_transactions", ["policy_number"])

    op.create_table(
        "clawbacks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("policy_number", sa.String(30), nullable=False),
        sa.Column("agent_id", sa.String(30), nullable=False),
        sa.Column("original_commission", sa.Numeric(14, 2), nullable=False),
        sa.Column("clawback_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("clawback_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("recovered_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("pending_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("reason", clawback_reason, nullable=False),
        sa.Column("status", clawback_status, nullable=False, server_default="PENDING"),
        sa.Column("policy_age_months", sa.Integer, nullable=False),
        sa.Column("trigger_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("policy_inception_date", sa.Date, nullable=False),
        sa.Column("policy_end_date", sa.Date, nullable=True),
        sa.Column("recovery_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_schedule", recovery_schedule, nullable=False, server_default="IMMEDIATE"),
        sa.Column("installment_months", sa.Integer, nullable=True),
        sa.Column("approved_by", sa.String(100), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("waived_by", sa.String(100), nullable=True),
        sa.Column("waived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("waiver_reason", sa.Text, nullable=True),
        sa.Column("workflow_id", sa.String(100), nullable=True, index=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_by", sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_clawbacks_policy", "clawbacks", ["policy_number"])
    op.create_index("ix_clawbacks_agent_status", "clawbacks", ["agent_id", "status"])

    op.create_table(
        "clawback_recoveries",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("clawback_id", sa.Integer, sa.ForeignKey("clawbacks.id"), nullable=False, index=True),
        sa.Column("installment_number", sa.Integer, nullable=False),
        sa.Column("scheduled_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("recovered_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("scheduled_date", sa.Date, nullable=True),
        sa.Column("recovery_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_method", sa.String(30), nullable=True),
        sa.Column("statement_id", sa.Integer, nullable=True),
        sa.Column("disbursement_id", sa.Integer, nullable=True),
        sa.Column("transaction_ref", sa.String(60), nullable=True),
        sa.Column("status", recovery_status, nullable=False, server_default="SCHEDULED"),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_retry_date", sa.Date, nullable=True),
        sa.Column("voucher_number", sa.String(40), nullable=True),
        sa.Column("posted_to_gl", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("gl_posted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("clawback_id", "installment_number", name="uq_clawback_recovery_installment"),
    )

    op.create_table(
        "suspense_accounts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("agent_id", sa.String(30), nullable=True),
        sa.Column("policy_number", sa.String(30), nullable=True),
        sa.Column("commission_id", sa.Integer, nullable=True),
        sa.Column("disbursement_id", sa.Integer, nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("reason", suspense_reason, nullable=False),
        sa.Column("status", suspense_status, nullable=False, server_default="OPEN"),
        sa.Column("priority", suspense_priority, nullable=False, server_default="LOW"),
        sa.Column("suspense_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("aging_days", sa.Integer, nullable=False, server_default="0"),
        sa.Column("resolution_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_escalated", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_method", sa.String(50), nullable=True),
        sa.Column("resolved_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("write_off_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("write_off_reason", sa.Text, nullable=True),
        sa.Column("assigned_to", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("voucher_number", sa.String(40), nullable=True),
        sa.Column("posted_to_gl", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("resolution_voucher_number", sa.String(40), nullable=True),
        sa.Column("resolution_posted_to_gl", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("workflow_id", sa.String(100), nullable=True, index=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_by", sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_suspense_status_priority", "suspense_accounts", ["status", "priority"])
    op.create_index("ix_suspense_agent", "suspense_accounts", ["agent_id"])

    op.create_table(
        "suspense_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("suspense_id", sa.Integer, sa.ForeignKey("suspense_accounts.id"), nullable=False, index=True),
        sa.Column("transaction_type", suspense_txn_type, nullable=False),
        sa.Column("old_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("remarks", sa.Text, nullable=True),
        sa.Column("performed_by", sa.String(100), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "error_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("severity", error_severity, nullable=False, server_default="ERROR"),
        sa.Column("error_type", sa.String(200), nullable=False),
        sa.Column("category", sa.String(20), nullable=True),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("traceback", sa.Text, nullable=True),
        sa.Column("module", sa.String(300), nullable=True),
        sa.Column("function_name", sa.String(200), nullable=True),
        sa.Column("line_number", sa.Integer, nullable=True),
        sa.Column("request_method", sa.String(10), nullable=True),
        sa.Column("request_path", sa.String(500), nullable=True),
        sa.Column("request_body", sa.Text, nullable=True),
        sa.Column("status_code", sa.Integer, nullable=True),
        sa.Column("response_time_ms", sa.Float, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("task_name", sa.String(200), nullable=True),
        sa.Column("workflow_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_error_logs_created_at", "error_logs", ["created_at"])
    op.create_index("ix_error_logs_severity", "error_logs", ["severity"])


def downgrade() -> None:
    for table in (
        "error_logs",
        "suspense_transactions",
        "suspense_accounts",
        "clawback_recoveries",
        "clawbacks",
        "commission_transactions",
        "disbursements",
        "final_statements",
        "trial_statements",
        "commission_batches",
        "commission_rates",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum_type in (
        error_severity, suspense_txn_type, suspense_priority, suspense_reason, suspense_status,
        recovery_status, recovery_schedule, clawback_reason, clawback_status, failure_reason,
        disbursement_status, disbursement_mode, final_status, trial_status, batch_status,
        commission_status, commission_type, product_type,
    ):
        enum_type.drop(bind, checkfirst=True)
