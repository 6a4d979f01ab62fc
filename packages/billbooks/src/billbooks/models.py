"""Record types shared by the billing and accounting modules."""

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

CENTS = Decimal("0.01")
ZERO = Decimal("0")


class PaymentStatus(str, Enum):
    """Invoice payment status."""

    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    CANCELLED = "cancelled"


OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PARTIAL)


class PaymentType(str, Enum):
    """Direction of a payment record."""

    RECEIVED = "received"
    SENT = "sent"


class PaymentRecordStatus(str, Enum):
    """Status of a payment record."""

    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EntryType(str, Enum):
    """Ledger entry type."""

    INCOME = "income"
    EXPENSE = "expense"


class AccountType(str, Enum):
    """Money account type."""

    CASH = "cash"
    BANK = "bank"
    CREDIT = "credit"
    INVESTMENT = "investment"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CHECK = "check"
    BANK_TRANSFER = "bank_transfer"
    CREDIT_CARD = "credit_card"
    MOBILE_PAYMENT = "mobile_payment"


# Ledger payment method for receivables that have not been collected yet
PENDING_METHOD = "pending"

INCOME_CATEGORIES = {
    "sales": "Sales Revenue",
    "services": "Service Income",
    "interest": "Interest Income",
    "other_income": "Other Income",
    "accounts_receivable": "Accounts Receivable",
}

EXPENSE_CATEGORIES = {
    "office_supplies": "Office Supplies",
    "rent": "Rent & Utilities",
    "inventory": "Inventory Purchase",
    "marketing": "Marketing & Advertising",
    "travel": "Travel & Transportation",
    "maintenance": "Maintenance & Repairs",
    "professional_services": "Professional Services",
    "insurance": "Insurance",
    "taxes": "Taxes & Fees",
    "other_expenses": "Other Expenses",
}


def category_label(category: str, entry_type: EntryType | str) -> str:
    """Human label for a ledger category, falling back to the raw value."""
    labels = INCOME_CATEGORIES if EntryType(entry_type) == EntryType.INCOME else EXPENSE_CATEGORIES
    return labels.get(category, category)


def to_decimal(value: Any) -> Decimal:
    """Parse an amount from a datastore row; missing values count as zero."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        # str() keeps floats from dragging binary noise into the books
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


@dataclass(frozen=True)
class InvoiceItem:
    """A priced line on an invoice."""

    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal = ZERO
    tax_percent: Decimal = ZERO
    product_id: str | None = None
    description: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InvoiceItem":
        return cls(
            quantity=to_decimal(data.get("quantity")),
            unit_price=to_decimal(data.get("unit_price")),
            discount_percent=to_decimal(data.get("discount_percent")),
            tax_percent=to_decimal(data.get("tax_percent")),
            product_id=data.get("product_id"),
            description=data.get("description"),
        )

    def to_row(self, invoice_id: Any) -> dict[str, Any]:
        return {
            "invoice_id": invoice_id,
            "product_id": self.product_id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "discount_percent": self.discount_percent,
            "tax_percent": self.tax_percent,
        }


@dataclass
class Invoice:
    """Invoice as read back from the datastore."""

    id: Any
    invoice_number: str
    total_amount: Decimal
    amount_paid: Decimal = ZERO
    payment_status: PaymentStatus = PaymentStatus.PENDING
    customer_id: Any = None
    customer_name: str = "Unknown"
    invoice_date: date | None = None
    payment_method: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Invoice":
        customer = row.get("customers") or {}
        return cls(
            id=row.get("id"),
            invoice_number=row.get("invoice_number") or "",
            total_amount=to_decimal(row.get("total_amount")),
            amount_paid=to_decimal(row.get("amount_paid")),
            payment_status=PaymentStatus(row.get("payment_status") or PaymentStatus.PENDING),
            customer_id=row.get("customer_id"),
            customer_name=customer.get("name") or "Unknown",
            invoice_date=parse_date(row.get("invoice_date")),
            payment_method=row.get("payment_method"),
        )


@dataclass
class InvoiceDraft:
    """Invoice contents as entered, for a new invoice or an edit."""

    customer_id: Any
    items: list[InvoiceItem] = field(default_factory=list)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    amount_paid: Decimal = ZERO
    tax_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    payment_method: str | None = None
    notes: str | None = None
