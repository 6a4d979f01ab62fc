"""Billbooks - invoice billing reconciled into the books of account."""

__version__ = "0.1.0"

from billbooks.accounts import (
    AccountsRepository,
    ChartOfAccountsRepository,
    ExpensesRepository,
    LedgerRepository,
    PaymentsRepository,
)
from billbooks.clients import DatastoreClient, IdentityClient
from billbooks.config import configure_logging, get_settings
from billbooks.invoices import InvoicesRepository
from billbooks.invoicing import (
    BillingError,
    InvalidPaymentError,
    InvoiceValidationError,
    OverpaymentError,
    apply_payment,
    calculate_invoice_total,
)
from billbooks.models import Invoice, InvoiceDraft, InvoiceItem, PaymentStatus
from billbooks.reconciliation import BillingReconciler, ReconciliationResult
from billbooks.reports import ReportsService
from billbooks.users import NotAuthenticatedError, UserDirectory

__all__ = [
    # Version
    "__version__",
    # Clients
    "DatastoreClient",
    "IdentityClient",
    # Repositories
    "AccountsRepository",
    "ChartOfAccountsRepository",
    "ExpensesRepository",
    "LedgerRepository",
    "PaymentsRepository",
    "InvoicesRepository",
    # Billing rules
    "BillingError",
    "InvalidPaymentError",
    "InvoiceValidationError",
    "OverpaymentError",
    "apply_payment",
    "calculate_invoice_total",
    # Records
    "Invoice",
    "InvoiceDraft",
    "InvoiceItem",
    "PaymentStatus",
    # Services
    "BillingReconciler",
    "ReconciliationResult",
    "ReportsService",
    "UserDirectory",
    "NotAuthenticatedError",
    # Config
    "get_settings",
    "configure_logging",
]
