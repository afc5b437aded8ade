"""Read-only audit of withdrawals against the creator's current bank account.

Each withdrawal is classified ``passed``, ``failed`` or ``pending``:

* ``pending``: still ``pending`` or ``processing``;
* ``failed``: ``failed``/``cancelled``, or any check below fails;
* ``passed``: amount in range, bank details match, transaction id present
  and processing took no longer than the allowed window.

Nothing is written to the database.
"""

import logging
from datetime import date, datetime, time
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from nexa_platform.app.config import Settings, get_settings
from nexa_platform.domain.enums import VerificationOutcome, WithdrawalStatus
from nexa_platform.domain.models import BankAccount, Withdrawal
from nexa_platform.domain.schemas import VerificationCheck, VerificationResult, VerificationSummary
from nexa_platform.domain.timeutils import as_utc
from nexa_platform.services.notification_service import format_brl
from nexa_platform.services.withdrawal_processor import get_bank_account

logger = logging.getLogger(__name__)

# Fields that must match between the withdrawal snapshot and the bank account
BANK_FIELDS = ("bank_code", "agencia", "agencia_dv", "conta", "conta_dv", "cpf")

PENDING_STATUSES = {WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value}
FAILED_STATUSES = {WithdrawalStatus.FAILED.value, WithdrawalStatus.CANCELLED.value}

METHOD_LABELS = {
    "bank_transfer": "Bank transfer",
    "pagarme_account": "Pagar.me account",
    "pix": "PIX",
}


class VerificationFilters(BaseModel):
    """Optional filters for the audit."""

    id: str | None = None
    status: str | None = None
    method: str | None = None
    start_date: date | None = None
    end_date: date | None = None


def _norm(value) -> str:
    return "" if value is None else str(value)


def extract_bank_details(withdrawal: Withdrawal) -> dict[str, str | None] | None:
    details = withdrawal.withdrawal_details
    if not details or not isinstance(details, dict):
        return None
    return {field: details.get(field) for field in (*BANK_FIELDS, "name")}


def account_bank_details(account: BankAccount | None) -> dict[str, str | None] | None:
    if account is None:
        return None
    return {field: getattr(account, field) for field in (*BANK_FIELDS, "name")}


def compare_bank_details(withdrawal: Withdrawal, account: BankAccount | None) -> tuple[bool, list[str]]:
    """Return ``(match, mismatched_fields)``."""
    snapshot = extract_bank_details(withdrawal)
    if account is None or snapshot is None:
        return False, []
    mismatched = [
        field for field in BANK_FIELDS if _norm(snapshot.get(field)) != _norm(getattr(account, field))
    ]
    return not mismatched, mismatched


def processing_hours(withdrawal: Withdrawal) -> int | None:
    """Whole hours between request and processing, or None if unprocessed."""
    if withdrawal.processed_at is None or withdrawal.created_at is None:
        return None
    delta = as_utc(withdrawal.processed_at) - as_utc(withdrawal.created_at)
    return int(delta.total_seconds() // 3600)


def classify(
    withdrawal: Withdrawal,
    account: BankAccount | None,
    settings: Settings,
) -> VerificationResult:
    """Run every check for one withdrawal."""
    amount = Decimal(str(withdrawal.amount))
    max_amount = Decimal(str(settings.withdrawal_max_amount))
    bank_match, mismatched = compare_bank_details(withdrawal, account)
    hours = processing_hours(withdrawal)

    if account is None:
        bank_detail = "no bank account on file"
    elif extract_bank_details(withdrawal) is None:
        bank_detail = "withdrawal has no bank details"
    else:
        bank_detail = ", ".join(mismatched) if mismatched else ""

    checks = [
        VerificationCheck(
            name="amount",
            passed=Decimal("0") < amount <= max_amount,
            detail=f"{format_brl(amount)}",
        ),
        VerificationCheck(name="bank_details", passed=bank_match, detail=bank_detail),
        VerificationCheck(
            name="transaction_id",
            passed=bool(withdrawal.transaction_id),
            detail=withdrawal.transaction_id or "missing",
        ),
        VerificationCheck(
            name="processing_time",
            passed=hours is None or hours <= settings.withdrawal_max_processing_hours,
            detail="not processed" if hours is None else f"{hours}h",
        ),
    ]

    if withdrawal.status in PENDING_STATUSES:
        outcome = VerificationOutcome.PENDING
    elif withdrawal.status in FAILED_STATUSES:
        outcome = VerificationOutcome.FAILED
    elif all(check.passed for check in checks):
        outcome = VerificationOutcome.PASSED
    else:
        outcome = VerificationOutcome.FAILED

    return VerificationResult(
        withdrawal_id=withdrawal.id,
        creator_id=withdrawal.creator_id,
        amount=amount,
        method=withdrawal.withdrawal_method,
        status=withdrawal.status,
        outcome=outcome,
        checks=checks,
        withdrawal_bank=extract_bank_details(withdrawal),
        account_bank=account_bank_details(account),
    )


def summarize(results: list[VerificationResult]) -> VerificationSummary:
    summary = VerificationSummary(total=len(results))
    for result in results:
        if result.outcome == VerificationOutcome.PASSED:
            summary.passed += 1
        elif result.outcome == VerificationOutcome.FAILED:
            summary.failed += 1
        else:
            summary.pending += 1
    if summary.total:
        summary.pass_rate = round(summary.passed / summary.total * 100, 1)
    return summary


async def verify_withdrawals(
    db: AsyncSession,
    filters: VerificationFilters | None = None,
    settings: Settings | None = None,
) -> tuple[list[Withdrawal], list[VerificationResult], VerificationSummary]:
    """Audit withdrawals matching *filters*, newest first."""
    filters = filters or VerificationFilters()
    settings = settings or get_settings()

    query = select(Withdrawal).options(selectinload(Withdrawal.creator))
    if filters.id:
        query = query.where(Withdrawal.id == filters.id)
    if filters.status:
        query = query.where(Withdrawal.status == filters.status)
    if filters.method:
        query = query.where(Withdrawal.withdrawal_method == filters.method)
    if filters.start_date:
        query = query.where(Withdrawal.created_at >= datetime.combine(filters.start_date, time.min))
    if filters.end_date:
        query = query.where(Withdrawal.created_at <= datetime.combine(filters.end_date, time(23, 59, 59, 999999)))

    result = await db.execute(query.order_by(Withdrawal.created_at.desc()))
    withdrawals = list(result.scalars().all())

    accounts: dict[str, BankAccount | None] = {}
    results = []
    for withdrawal in withdrawals:
        if withdrawal.creator_id not in accounts:
            accounts[withdrawal.creator_id] = await get_bank_account(db, withdrawal.creator_id)
        results.append(classify(withdrawal, accounts[withdrawal.creator_id], settings))

    summary = summarize(results)
    logger.info(
        "Withdrawal verification: total=%d passed=%d failed=%d pending=%d",
        summary.total, summary.passed, summary.failed, summary.pending,
    )
    return withdrawals, results, summary


# ---------------------------------------------------------------------------
# Report rendering
# ---------------------------------------------------------------------------

OUTCOME_ICONS = {
    VerificationOutcome.PASSED.value: "[PASS]",
    VerificationOutcome.FAILED.value: "[FAIL]",
    VerificationOutcome.PENDING.value: "[WAIT]",
}


def _fmt_bank(details: dict[str, str | None], indent: str) -> list[str]:
    return [
        f"{indent}Bank Code: {_norm(details.get('bank_code'))}",
        f"{indent}Agency: {_norm(details.get('agencia'))}-{_norm(details.get('agencia_dv'))}",
        f"{indent}Account: {_norm(details.get('conta'))}-{_norm(details.get('conta_dv'))}",
        f"{indent}CPF: {_norm(details.get('cpf'))}",
        f"{indent}Name: {_norm(details.get('name'))}",
    ]


def render_report(
    withdrawals: list[Withdrawal],
    results: list[VerificationResult],
    summary: VerificationSummary,
    detailed: bool = False,
) -> list[str]:
    """Human-readable report lines for the CLI."""
    lines: list[str] = []
    if not results:
        lines.append("No withdrawals found matching the criteria.")
        return lines

    lines.append(f"Found {summary.total} withdrawal(s) to verify.")
    lines.append("")
    for withdrawal, result in zip(withdrawals, results):
        creator = withdrawal.creator
        lines.append(f"{OUTCOME_ICONS[result.outcome]} Withdrawal #{withdrawal.id} - {format_brl(withdrawal.amount)}")
        if creator is not None:
            lines.append(f"   Creator: {creator.name} ({creator.email})")
        lines.append(f"   Method: {METHOD_LABELS.get(withdrawal.withdrawal_method, withdrawal.withdrawal_method)}")
        lines.append(f"   Status: {withdrawal.status}")
        if withdrawal.created_at:
            lines.append(f"   Created: {withdrawal.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
        if withdrawal.processed_at:
            lines.append(f"   Processed: {withdrawal.processed_at.strftime('%Y-%m-%d %H:%M:%S')}")
        if withdrawal.transaction_id:
            lines.append(f"   Transaction ID: {withdrawal.transaction_id}")

        bank_check = next(c for c in result.checks if c.name == "bank_details")
        lines.append(f"   Bank Details Match: {'yes' if bank_check.passed else 'no'}")
        for check in result.failures:
            if result.outcome == VerificationOutcome.FAILED.value:
                lines.append(f"   Failed check: {check.name} ({check.detail})")

        if detailed and result.withdrawal_bank:
            lines.append("   Detailed Bank Information:")
            lines.append("   Withdrawal Bank Details:")
            lines.extend(_fmt_bank(result.withdrawal_bank, "     "))
            if result.account_bank:
                lines.append("   Current Bank Account:")
                lines.extend(_fmt_bank(result.account_bank, "     "))
            else:
                lines.append("   No current bank account found")
        lines.append("")

    lines.append("=== Verification Summary ===")
    lines.append(f"Total Withdrawals: {summary.total}")
    lines.append(f"Passed: {summary.passed}")
    lines.append(f"Failed: {summary.failed}")
    lines.append(f"Pending: {summary.pending}")
    lines.append(f"Pass Rate: {summary.pass_rate}%")
    return lines
