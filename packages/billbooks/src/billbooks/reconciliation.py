"""Billing to accounting reconciliation.

Mirrors invoice lifecycle events into the books. Creating an invoice records
a receivable in the ledger; each payment against it updates the invoice's
paid amount and status, then writes an income ledger entry and a received
payment record.

The write sequence (invoice, then ledger, then payment) is not atomic: the
datastore offers no transaction across those requests. Every step is logged
with the invoice id and the steps already completed, so a sequence that
stops halfway can be found and finished by hand.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from functools import partial
from typing import Any

import structlog

from billbooks.accounts import Clock, LedgerRepository, PaymentsRepository, local_now
from billbooks.config import Settings, get_settings
from billbooks.invoices import InvoicesRepository
from billbooks.invoicing import (
    InvoiceValidationError,
    PaymentOutcome,
    apply_payment,
    calculate_invoice_total,
    generate_invoice_number,
    initial_amount_paid,
    initial_payment_status,
    validate_invoice,
    validate_new_invoice,
)
from billbooks.models import (
    OPEN_STATUSES,
    PENDING_METHOD,
    ZERO,
    EntryType,
    Invoice,
    InvoiceDraft,
    PaymentRecordStatus,
    PaymentStatus,
    PaymentType,
    quantize_money,
)

logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationResult:
    """Outcome of applying a payment to an invoice."""

    invoice_id: Any
    payment_status: PaymentStatus
    amount_paid: Decimal
    remaining: Decimal
    message: str
    ledger_entry: dict[str, Any] | None = None
    payment: dict[str, Any] | None = None
    success: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "invoice_id": self.invoice_id,
            "payment_status": self.payment_status.value,
            "amount_paid": self.amount_paid,
            "remaining": self.remaining,
            "ledger_entry_id": (self.ledger_entry or {}).get("id"),
            "payment_id": (self.payment or {}).get("id"),
        }


class BillingReconciler:
    """Turns invoice events into ledger entries and payment records."""

    def __init__(
        self,
        invoices: InvoicesRepository,
        ledger: LedgerRepository,
        payments: PaymentsRepository,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ):
        self._invoices = invoices
        self._ledger = ledger
        self._payments = payments
        self._settings = settings or get_settings()
        self._clock = clock or local_now

    # === Record builders ===

    def _method(self, payment_method: str | None) -> str:
        return payment_method or self._settings.default_payment_method

    def _money(self, amount: Decimal) -> str:
        return f"{self._settings.currency_symbol}{quantize_money(amount)}"

    def _ledger_entry(
        self,
        invoice: Invoice,
        *,
        category: str,
        description: str,
        amount: Decimal,
        payment_method: str,
        notes: str,
    ) -> dict[str, Any]:
        now = self._clock()
        return {
            "entry_date": now.date().isoformat(),
            "entry_time": now.strftime("%H:%M:%S"),
            "entry_type": EntryType.INCOME,
            "category": category,
            "description": description,
            "amount": amount,
            "reference_number": invoice.invoice_number,
            "vendor_customer": invoice.customer_name,
            "payment_method": payment_method,
            "notes": notes,
        }

    def _payment_record(
        self, invoice: Invoice, amount: Decimal, payment_method: str, notes: str
    ) -> dict[str, Any]:
        return {
            "payment_date": self._clock().date().isoformat(),
            "payment_type": PaymentType.RECEIVED,
            "amount": amount,
            "customer_vendor_name": invoice.customer_name,
            "reference_number": invoice.invoice_number,
            "payment_method": payment_method,
            "payment_status": PaymentRecordStatus.COMPLETED,
            "notes": notes,
            "invoice_id": invoice.id,
        }

    # === Single writes ===

    async def create_pending_ledger_entry(
        self, invoice: Invoice, user_id: str
    ) -> dict[str, Any]:
        """Record a new invoice's total as a receivable."""
        entry = self._ledger_entry(
            invoice,
            category="accounts_receivable",
            description=f"Invoice Created - {invoice.invoice_number}",
            amount=invoice.total_amount,
            payment_method=PENDING_METHOD,
            notes=f"Pending payment for invoice {invoice.invoice_number}",
        )
        return await self._ledger.create_entry(entry, user_id)

    async def create_ledger_entry_from_invoice(
        self,
        invoice: Invoice,
        payment_method: str | None,
        user_id: str,
        amount: Decimal | None = None,
    ) -> dict[str, Any]:
        """Record income for a payment that settles the invoice."""
        entry = self._ledger_entry(
            invoice,
            category="sales",
            description=f"Invoice Payment - {invoice.invoice_number}",
            amount=invoice.total_amount if amount is None else amount,
            payment_method=self._method(payment_method),
            notes=f"Payment for invoice {invoice.invoice_number}",
        )
        return await self._ledger.create_entry(entry, user_id)

    async def create_payment_from_invoice(
        self,
        invoice: Invoice,
        payment_method: str | None,
        user_id: str,
        amount: Decimal | None = None,
    ) -> dict[str, Any]:
        record = self._payment_record(
            invoice,
            invoice.total_amount if amount is None else amount,
            self._method(payment_method),
            f"Payment for invoice {invoice.invoice_number}",
        )
        return await self._payments.create_payment(record, user_id)

    async def create_partial_payment_ledger_entry(
        self, invoice: Invoice, amount: Decimal, payment_method: str | None, user_id: str
    ) -> dict[str, Any]:
        entry = self._ledger_entry(
            invoice,
            category="sales",
            description=f"Partial Payment - {invoice.invoice_number}",
            amount=amount,
            payment_method=self._method(payment_method),
            notes=f"Partial payment of {self._money(amount)} for invoice {invoice.invoice_number}",
        )
        return await self._ledger.create_entry(entry, user_id)

    async def create_partial_payment(
        self, invoice: Invoice, amount: Decimal, payment_method: str | None, user_id: str
    ) -> dict[str, Any]:
        record = self._payment_record(
            invoice,
            amount,
            self._method(payment_method),
            f"Partial payment of {self._money(amount)} for invoice {invoice.invoice_number}",
        )
        return await self._payments.create_payment(record, user_id)

    # === Event handlers ===

    async def _run_steps(
        self, invoice_id: Any, steps: list[tuple[str, Callable[[], Awaitable[Any]]]]
    ) -> list[Any]:
        completed: list[str] = []
        results: list[Any] = []
        for name, step in steps:
            try:
                results.append(await step())
            except Exception:
                logger.exception(
                    "reconciliation_step_failed",
                    invoice_id=invoice_id,
                    step=name,
                    completed_steps=completed,
                )
                raise
            completed.append(name)
            logger.debug("reconciliation_step_done", invoice_id=invoice_id, step=name)
        return results

    async def _settle(
        self,
        invoice: Invoice,
        outcome: PaymentOutcome,
        amount: Decimal,
        payment_method: str | None,
        user_id: str,
        partial_payment: bool,
    ) -> ReconciliationResult:
        method = self._method(payment_method)
        if partial_payment:
            ledger_step = partial(
                self.create_partial_payment_ledger_entry, invoice, amount, method, user_id
            )
            payment_step = partial(
                self.create_partial_payment, invoice, amount, method, user_id
            )
        else:
            ledger_step = partial(
                self.create_ledger_entry_from_invoice, invoice, method, user_id, amount=amount
            )
            payment_step = partial(
                self.create_payment_from_invoice, invoice, method, user_id, amount=amount
            )
        invoice_step = partial(
            self._invoices.update_payment_state,
            invoice.id,
            outcome.amount_paid,
            outcome.payment_status,
            method,
        )

        _, ledger_entry, payment = await self._run_steps(
            invoice.id,
            [
                ("update_invoice", invoice_step),
                ("create_ledger_entry", ledger_step),
                ("create_payment", payment_step),
            ],
        )

        message = (
            "Full payment completed"
            if outcome.is_fully_paid
            else "Partial payment recorded"
        )
        logger.info(
            "invoice_payment_recorded",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            amount=str(amount),
            amount_paid=str(outcome.amount_paid),
            status=outcome.payment_status.value,
        )
        return ReconciliationResult(
            invoice_id=invoice.id,
            payment_status=outcome.payment_status,
            amount_paid=outcome.amount_paid,
            remaining=outcome.remaining,
            message=f"{message} and account entries created",
            ledger_entry=ledger_entry,
            payment=payment,
        )

    async def record_partial_payment(
        self,
        invoice_id: Any,
        amount: Decimal,
        payment_method: str | None,
        user_id: str,
    ) -> ReconciliationResult:
        """Apply a payment of any size up to the outstanding balance."""
        invoice = Invoice.from_row(await self._invoices.get_invoice(invoice_id))
        outcome = apply_payment(
            invoice.total_amount, invoice.amount_paid, amount, invoice.payment_status
        )
        return await self._settle(
            invoice, outcome, amount, payment_method, user_id, partial_payment=True
        )

    async def mark_invoice_as_paid(
        self, invoice_id: Any, payment_method: str | None, user_id: str
    ) -> ReconciliationResult:
        """Settle the invoice's outstanding balance in one payment.

        An open invoice with nothing left to pay (a zero total, or partial
        payments that already cover it) is closed without ledger or payment
        records.
        """
        invoice = Invoice.from_row(await self._invoices.get_invoice(invoice_id))
        remainder = invoice.total_amount - invoice.amount_paid
        if invoice.payment_status in OPEN_STATUSES and remainder <= ZERO:
            return await self._close_settled(invoice, payment_method)
        outcome = apply_payment(
            invoice.total_amount, invoice.amount_paid, remainder, invoice.payment_status
        )
        return await self._settle(
            invoice, outcome, remainder, payment_method, user_id, partial_payment=False
        )

    async def _close_settled(
        self, invoice: Invoice, payment_method: str | None
    ) -> ReconciliationResult:
        method = self._method(payment_method)
        await self._run_steps(
            invoice.id,
            [
                (
                    "update_invoice",
                    partial(
                        self._invoices.update_payment_state,
                        invoice.id,
                        invoice.amount_paid,
                        PaymentStatus.PAID,
                        method,
                    ),
                )
            ],
        )
        logger.info(
            "invoice_closed_without_payment",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            amount_paid=str(invoice.amount_paid),
        )
        return ReconciliationResult(
            invoice_id=invoice.id,
            payment_status=PaymentStatus.PAID,
            amount_paid=invoice.amount_paid,
            remaining=ZERO,
            message="Invoice marked as paid; nothing was outstanding",
        )

    async def record_new_invoice(self, invoice: Invoice, user_id: str) -> bool:
        """Books entries for a freshly stored invoice.

        A failure here is logged and reported through the return value; the
        invoice itself is already stored and stays valid.
        """
        try:
            await self.create_pending_ledger_entry(invoice, user_id)
            if invoice.payment_status == PaymentStatus.PARTIAL and invoice.amount_paid > 0:
                await self.create_partial_payment_ledger_entry(
                    invoice, invoice.amount_paid, invoice.payment_method, user_id
                )
                await self.create_partial_payment(
                    invoice, invoice.amount_paid, invoice.payment_method, user_id
                )
            elif invoice.payment_status == PaymentStatus.PAID and invoice.total_amount > 0:
                await self.create_ledger_entry_from_invoice(
                    invoice, invoice.payment_method, user_id
                )
                await self.create_payment_from_invoice(invoice, invoice.payment_method, user_id)
        except Exception as e:
            logger.warning(
                "invoice_account_entries_failed",
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                error=str(e),
            )
            return False
        return True

    @staticmethod
    def _invoice_header(draft: InvoiceDraft, total: Decimal) -> dict[str, Any]:
        status = initial_payment_status(draft.payment_status, total, draft.amount_paid)
        return {
            "customer_id": draft.customer_id,
            "total_amount": total,
            "discount_amount": draft.discount_amount,
            "tax_amount": draft.tax_amount,
            "payment_status": status,
            "payment_method": draft.payment_method,
            "notes": draft.notes,
            "amount_paid": initial_amount_paid(status, total, draft.amount_paid),
        }

    async def create_invoice(self, draft: InvoiceDraft, user_id: str) -> dict[str, Any]:
        """Validate, number and store a new invoice, then book it."""
        total = calculate_invoice_total(draft.items, draft.tax_amount, draft.discount_amount)
        validate_new_invoice(draft, total)

        stored = await self._invoices.create_invoice(
            {
                "invoice_number": generate_invoice_number(self._clock()),
                "invoice_date": self._clock().date().isoformat(),
                **self._invoice_header(draft, total),
                "created_by": user_id,
            },
            draft.items,
        )

        full = await self._invoices.get_invoice(stored["id"])
        await self.record_new_invoice(Invoice.from_row(full), user_id)
        return full

    async def update_invoice(self, invoice_id: Any, draft: InvoiceDraft) -> dict[str, Any]:
        """Rewrite an invoice's header and line items.

        Edits change the invoice only; entries already in the books are left
        as they are. Setting the status to cancelled through an edit is allowed.
        """
        total = calculate_invoice_total(draft.items, draft.tax_amount, draft.discount_amount)
        validate_invoice(draft, total)
        await self._invoices.update_invoice(
            invoice_id, self._invoice_header(draft, total), draft.items
        )
        return await self._invoices.get_invoice(invoice_id)

    async def cancel_invoice(self, invoice_id: Any) -> dict[str, Any]:
        """Cancel an open invoice, keeping its items and paid amount."""
        invoice = Invoice.from_row(await self._invoices.get_invoice(invoice_id))
        if invoice.payment_status not in OPEN_STATUSES:
            raise InvoiceValidationError(
                f"Only open invoices can be cancelled, invoice is {invoice.payment_status.value}"
            )
        await self._invoices.update_invoice(
            invoice_id, {"payment_status": PaymentStatus.CANCELLED}
        )
        logger.info(
            "invoice_cancelled", invoice_id=invoice.id, invoice_number=invoice.invoice_number
        )
        return await self._invoices.get_invoice(invoice_id)
