"""Invoice arithmetic and payment-state rules.

Everything here is pure: no datastore access, no clock reads. The
reconciliation layer reads an invoice, asks these functions what the new
state is, then writes it back.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from billbooks.models import (
    ZERO,
    InvoiceDraft,
    InvoiceItem,
    PaymentStatus,
    quantize_money,
    to_decimal,
)

HUNDRED = Decimal("100")


class BillingError(Exception):
    """Base exception for billing rule violations."""

    pass


class InvoiceValidationError(BillingError):
    """A new invoice is incomplete or inconsistent."""

    pass


class InvalidPaymentError(BillingError):
    """A payment cannot be applied to the invoice in its current state."""

    pass


class OverpaymentError(InvalidPaymentError):
    """A payment exceeds the invoice's outstanding balance."""

    def __init__(self, payment_amount: Decimal, outstanding: Decimal):
        super().__init__(
            f"Payment of {payment_amount} exceeds outstanding balance of {outstanding}"
        )
        self.payment_amount = payment_amount
        self.outstanding = outstanding


@dataclass(frozen=True)
class PaymentOutcome:
    """Invoice payment state after applying a payment."""

    amount_paid: Decimal
    payment_status: PaymentStatus
    remaining: Decimal

    @property
    def is_fully_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID


def line_total(item: InvoiceItem) -> Decimal:
    """Line amount after the line's percentage discount."""
    gross = item.quantity * item.unit_price
    return gross - gross * item.discount_percent / HUNDRED


def calculate_invoice_total(
    items: Iterable[InvoiceItem],
    tax_amount: Decimal | str | int = ZERO,
    discount_amount: Decimal | str | int = ZERO,
) -> Decimal:
    """Invoice total: discounted lines plus tax minus invoice-level discount.

    Never negative; rounded to cents.
    """
    subtotal = sum((line_total(item) for item in items), ZERO)
    total = subtotal + to_decimal(tax_amount) - to_decimal(discount_amount)
    return quantize_money(max(ZERO, total))


def generate_invoice_number(now: datetime) -> str:
    """``INV-`` followed by the last six digits of the millisecond timestamp."""
    millis = int(now.timestamp() * 1000)
    return f"INV-{str(millis)[-6:]}"


def initial_payment_status(
    status: PaymentStatus, total_amount: Decimal, amount_paid: Decimal = ZERO
) -> PaymentStatus:
    """Status to store for a new or edited invoice.

    A partial payment that already covers the total settles the invoice.
    """
    if status == PaymentStatus.PARTIAL and amount_paid >= total_amount:
        return PaymentStatus.PAID
    return status


def initial_amount_paid(
    status: PaymentStatus, total_amount: Decimal, amount_paid: Decimal = ZERO
) -> Decimal:
    """Amount already paid when an invoice is stored with the given status."""
    if status == PaymentStatus.PARTIAL:
        return amount_paid
    if status == PaymentStatus.PAID:
        return total_amount
    return ZERO


def validate_invoice(draft: InvoiceDraft, total_amount: Decimal) -> None:
    """Raise InvoiceValidationError if the draft cannot be stored."""
    if not draft.customer_id:
        raise InvoiceValidationError("Please select a customer")
    if not draft.items:
        raise InvoiceValidationError("Please add at least one item to the invoice")
    for index, item in enumerate(draft.items, start=1):
        if item.quantity <= ZERO:
            raise InvoiceValidationError(f"Item {index} must have a positive quantity")
        if item.unit_price < ZERO:
            raise InvoiceValidationError(f"Item {index} has a negative unit price")
        if not ZERO <= item.discount_percent <= HUNDRED:
            raise InvoiceValidationError(f"Item {index} discount must be between 0 and 100")
    if draft.payment_status == PaymentStatus.PARTIAL:
        if draft.amount_paid <= ZERO:
            raise InvoiceValidationError("Please enter a valid amount paid for partial payment")
        if draft.amount_paid > total_amount:
            raise InvoiceValidationError("Amount paid cannot be greater than total amount")


def validate_new_invoice(draft: InvoiceDraft, total_amount: Decimal) -> None:
    """Like validate_invoice; a new invoice also cannot start out cancelled."""
    validate_invoice(draft, total_amount)
    if draft.payment_status == PaymentStatus.CANCELLED:
        raise InvoiceValidationError("A new invoice cannot be cancelled")


def outstanding_amount(
    total_amount: Decimal, amount_paid: Decimal, status: PaymentStatus
) -> Decimal:
    """Pending amount: full total when pending, the remainder when partial."""
    if status == PaymentStatus.PENDING:
        return total_amount
    if status == PaymentStatus.PARTIAL:
        return total_amount - amount_paid
    return ZERO


def apply_payment(
    total_amount: Decimal,
    amount_paid: Decimal,
    payment_amount: Decimal,
    status: PaymentStatus = PaymentStatus.PENDING,
) -> PaymentOutcome:
    """Apply a payment to an invoice and return its new payment state.

    The new paid amount is the old one plus the payment; the invoice is
    ``paid`` once that reaches the total and ``partial`` otherwise. Paid and
    cancelled invoices take no further payments, and a payment larger than
    the remaining balance is refused, so ``amount_paid <= total_amount``
    holds after every accepted payment.
    """
    if payment_amount <= ZERO:
        raise InvalidPaymentError(f"Payment amount must be positive, got {payment_amount}")
    if status == PaymentStatus.PAID:
        raise InvalidPaymentError("Invoice is already paid")
    if status == PaymentStatus.CANCELLED:
        raise InvalidPaymentError("Invoice is cancelled")

    remaining_before = total_amount - amount_paid
    if payment_amount > remaining_before:
        raise OverpaymentError(payment_amount, remaining_before)

    new_paid = amount_paid + payment_amount
    new_status = PaymentStatus.PAID if new_paid >= total_amount else PaymentStatus.PARTIAL
    return PaymentOutcome(
        amount_paid=new_paid,
        payment_status=new_status,
        remaining=total_amount - new_paid,
    )
