"""Tests for billing to accounting reconciliation."""

from decimal import Decimal

import pytest

from billbooks.accounts import LedgerRepository, PaymentsRepository
from billbooks.clients.datastore import DatastoreError, NotFoundError
from billbooks.config import get_settings
from billbooks.invoices import InvoicesRepository
from billbooks.invoicing import InvalidPaymentError, InvoiceValidationError, OverpaymentError
from billbooks.models import InvoiceDraft, InvoiceItem, PaymentStatus
from billbooks.reconciliation import BillingReconciler


@pytest.fixture
def reconciler(seeded_datastore, fixed_clock):
    """Reconciler over the seeded in-memory datastore."""
    return BillingReconciler(
        InvoicesRepository(seeded_datastore, clock=fixed_clock),
        LedgerRepository(seeded_datastore, clock=fixed_clock),
        PaymentsRepository(seeded_datastore, clock=fixed_clock),
        settings=get_settings(),
        clock=fixed_clock,
    )


def _invoice(datastore, invoice_id=100):
    return next(row for row in datastore.rows("invoices") if row["id"] == invoice_id)


class TestPartialPayments:
    """Tests for record_partial_payment."""

    @pytest.mark.asyncio
    async def test_partial_then_final_payment(self, reconciler, seeded_datastore):
        first = await reconciler.record_partial_payment(100, Decimal("400"), "cash", "user_123")

        assert first.payment_status == PaymentStatus.PARTIAL
        assert first.amount_paid == Decimal("400")
        assert first.remaining == Decimal("600")
        assert first.message == "Partial payment recorded and account entries created"
        assert _invoice(seeded_datastore)["payment_status"] == "partial"
        assert Decimal(_invoice(seeded_datastore)["amount_paid"]) == Decimal("400")

        second = await reconciler.record_partial_payment(
            100, Decimal("600"), "bank_transfer", "user_123"
        )

        assert second.payment_status == PaymentStatus.PAID
        assert second.amount_paid == Decimal("1000")
        assert second.remaining == Decimal("0")
        assert second.message == "Full payment completed and account entries created"
        assert _invoice(seeded_datastore)["payment_status"] == "paid"
        assert _invoice(seeded_datastore)["payment_method"] == "bank_transfer"

        ledger = seeded_datastore.rows("ledger_entries")
        payments = seeded_datastore.rows("payments")
        assert [Decimal(e["amount"]) for e in ledger] == [Decimal("400"), Decimal("600")]
        assert [Decimal(p["amount"]) for p in payments] == [Decimal("400"), Decimal("600")]

    @pytest.mark.asyncio
    async def test_entries_describe_the_payment(self, reconciler, seeded_datastore):
        await reconciler.record_partial_payment(100, Decimal("400"), None, "user_123")

        entry = seeded_datastore.rows("ledger_entries")[0]
        assert entry["description"] == "Partial Payment - INV-482913"
        assert entry["category"] == "sales"
        assert entry["entry_type"] == "income"
        assert entry["entry_date"] == "2024-01-15"
        assert entry["entry_time"] == "10:30:00"
        assert entry["vendor_customer"] == "Asha Traders"
        assert entry["payment_method"] == "cash"
        assert entry["created_by"] == "user_123"
        assert entry["notes"] == "Partial payment of ₹400.00 for invoice INV-482913"

        payment = seeded_datastore.rows("payments")[0]
        assert payment["payment_type"] == "received"
        assert payment["payment_status"] == "completed"
        assert payment["customer_vendor_name"] == "Asha Traders"
        assert payment["reference_number"] == "INV-482913"
        assert payment["invoice_id"] == 100

    @pytest.mark.asyncio
    async def test_overpayment_writes_nothing(self, reconciler, seeded_datastore):
        with pytest.raises(OverpaymentError):
            await reconciler.record_partial_payment(100, Decimal("1500"), "cash", "user_123")

        assert _invoice(seeded_datastore)["payment_status"] == "pending"
        assert seeded_datastore.rows("ledger_entries") == []
        assert seeded_datastore.rows("payments") == []

    @pytest.mark.asyncio
    async def test_missing_invoice(self, reconciler):
        with pytest.raises(NotFoundError):
            await reconciler.record_partial_payment(999, Decimal("10"), "cash", "user_123")

    @pytest.mark.asyncio
    async def test_failed_step_propagates(self, reconciler, seeded_datastore):
        """The invoice update stays applied when the ledger write fails."""
        seeded_datastore.fail_on[("insert", "ledger_entries")] = DatastoreError("down")

        with pytest.raises(DatastoreError):
            await reconciler.record_partial_payment(100, Decimal("400"), "cash", "user_123")

        assert _invoice(seeded_datastore)["payment_status"] == "partial"
        assert seeded_datastore.rows("payments") == []


class TestMarkAsPaid:
    """Tests for mark_invoice_as_paid."""

    @pytest.mark.asyncio
    async def test_mark_pending_invoice_paid(self, reconciler, seeded_datastore):
        result = await reconciler.mark_invoice_as_paid(100, "credit_card", "user_123")

        assert result.payment_status == PaymentStatus.PAID
        assert result.amount_paid == Decimal("1000.00")
        assert _invoice(seeded_datastore)["payment_status"] == "paid"
        entry = seeded_datastore.rows("ledger_entries")[0]
        assert entry["description"] == "Invoice Payment - INV-482913"
        assert Decimal(entry["amount"]) == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_mark_paid_settles_only_the_remainder(self, reconciler, seeded_datastore):
        await reconciler.record_partial_payment(100, Decimal("400"), "cash", "user_123")

        result = await reconciler.mark_invoice_as_paid(100, "cash", "user_123")

        assert result.amount_paid == Decimal("1000.00")
        amounts = [Decimal(p["amount"]) for p in seeded_datastore.rows("payments")]
        assert amounts == [Decimal("400"), Decimal("600.00")]
        assert sum(amounts) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_zero_total_invoice_closes_without_records(
        self, reconciler, seeded_datastore
    ):
        seeded_datastore.seed(
            "invoices",
            {
                "id": 101,
                "invoice_number": "INV-000101",
                "customer_id": 7,
                "total_amount": "0.00",
                "amount_paid": "0.00",
                "payment_status": "pending",
            },
        )

        result = await reconciler.mark_invoice_as_paid(101, "cash", "user_123")

        assert result.payment_status == PaymentStatus.PAID
        assert result.remaining == Decimal("0")
        assert result.ledger_entry is None
        assert _invoice(seeded_datastore, 101)["payment_status"] == "paid"
        assert seeded_datastore.rows("ledger_entries") == []
        assert seeded_datastore.rows("payments") == []

    @pytest.mark.asyncio
    async def test_fully_covered_partial_invoice_closes(self, reconciler, seeded_datastore):
        _invoice(seeded_datastore).update({"payment_status": "partial", "amount_paid": "1000.00"})

        result = await reconciler.mark_invoice_as_paid(100, "cash", "user_123")

        assert result.payment_status == PaymentStatus.PAID
        assert result.amount_paid == Decimal("1000.00")
        assert _invoice(seeded_datastore)["payment_status"] == "paid"
        assert seeded_datastore.rows("payments") == []

    @pytest.mark.asyncio
    async def test_paid_invoice_rejected(self, reconciler):
        await reconciler.mark_invoice_as_paid(100, "cash", "user_123")

        with pytest.raises(InvalidPaymentError):
            await reconciler.mark_invoice_as_paid(100, "cash", "user_123")

    @pytest.mark.asyncio
    async def test_to_dict(self, reconciler):
        result = await reconciler.mark_invoice_as_paid(100, "cash", "user_123")

        data = result.to_dict()

        assert data["success"] is True
        assert data["payment_status"] == "paid"
        assert data["ledger_entry_id"] is not None
        assert data["payment_id"] is not None


class TestCreateInvoice:
    """Tests for creating invoices and booking them."""

    @pytest.mark.asyncio
    async def test_pending_invoice_books_receivable(self, reconciler, seeded_datastore):
        draft = InvoiceDraft(
            customer_id=7,
            items=[InvoiceItem(quantity=Decimal("2"), unit_price=Decimal("250"))],
        )

        stored = await reconciler.create_invoice(draft, "user_123")

        assert stored["invoice_number"].startswith("INV-")
        assert Decimal(stored["total_amount"]) == Decimal("500.00")
        assert stored["customers"]["name"] == "Asha Traders"
        items = seeded_datastore.rows("invoice_items")
        assert len(items) == 1
        assert items[0]["invoice_id"] == stored["id"]

        entries = seeded_datastore.rows("ledger_entries")
        assert len(entries) == 1
        assert entries[0]["category"] == "accounts_receivable"
        assert entries[0]["payment_method"] == "pending"
        assert seeded_datastore.rows("payments") == []

    @pytest.mark.asyncio
    async def test_partial_invoice_books_payment(self, reconciler, seeded_datastore):
        draft = InvoiceDraft(
            customer_id=7,
            items=[InvoiceItem(quantity=Decimal("1"), unit_price=Decimal("1000"))],
            payment_status=PaymentStatus.PARTIAL,
            amount_paid=Decimal("250"),
            payment_method="cash",
        )

        stored = await reconciler.create_invoice(draft, "user_123")

        assert Decimal(stored["amount_paid"]) == Decimal("250")
        categories = [e["category"] for e in seeded_datastore.rows("ledger_entries")]
        assert categories == ["accounts_receivable", "sales"]
        assert Decimal(seeded_datastore.rows("payments")[0]["amount"]) == Decimal("250")

    @pytest.mark.asyncio
    async def test_paid_invoice_books_full_payment(self, reconciler, seeded_datastore):
        draft = InvoiceDraft(
            customer_id=7,
            items=[InvoiceItem(quantity=Decimal("1"), unit_price=Decimal("300"))],
            payment_status=PaymentStatus.PAID,
            payment_method="cash",
        )

        stored = await reconciler.create_invoice(draft, "user_123")

        assert Decimal(stored["amount_paid"]) == Decimal("300.00")
        assert Decimal(seeded_datastore.rows("payments")[0]["amount"]) == Decimal("300.00")

    @pytest.mark.asyncio
    async def test_partial_covering_total_is_stored_as_paid(
        self, reconciler, seeded_datastore
    ):
        draft = InvoiceDraft(
            customer_id=7,
            items=[InvoiceItem(quantity=Decimal("1"), unit_price=Decimal("500"))],
            payment_status=PaymentStatus.PARTIAL,
            amount_paid=Decimal("500"),
            payment_method="cash",
        )

        stored = await reconciler.create_invoice(draft, "user_123")

        assert stored["payment_status"] == "paid"
        assert Decimal(stored["amount_paid"]) == Decimal("500.00")
        assert [Decimal(p["amount"]) for p in seeded_datastore.rows("payments")] == [
            Decimal("500.00")
        ]
        with pytest.raises(InvalidPaymentError):
            await reconciler.mark_invoice_as_paid(stored["id"], "cash", "user_123")

    @pytest.mark.asyncio
    async def test_invalid_draft_stores_nothing(self, reconciler, seeded_datastore):
        with pytest.raises(InvoiceValidationError):
            await reconciler.create_invoice(InvoiceDraft(customer_id=7), "user_123")

        assert len(seeded_datastore.rows("invoices")) == 1

    @pytest.mark.asyncio
    async def test_booking_failure_keeps_invoice(self, reconciler, seeded_datastore):
        seeded_datastore.fail_on[("insert", "ledger_entries")] = DatastoreError("down")
        draft = InvoiceDraft(
            customer_id=7,
            items=[InvoiceItem(quantity=Decimal("1"), unit_price=Decimal("10"))],
        )

        stored = await reconciler.create_invoice(draft, "user_123")

        assert stored["id"] in [row["id"] for row in seeded_datastore.rows("invoices")]
        assert seeded_datastore.rows("ledger_entries") == []


class TestEditInvoice:
    """Tests for editing and cancelling invoices."""

    @pytest.mark.asyncio
    async def test_update_replaces_items_without_booking(self, reconciler, seeded_datastore):
        seeded_datastore.seed(
            "invoice_items", {"invoice_id": 100, "quantity": "1", "unit_price": "1000"}
        )
        draft = InvoiceDraft(
            customer_id=7,
            items=[
                InvoiceItem(quantity=Decimal("2"), unit_price=Decimal("300")),
                InvoiceItem(quantity=Decimal("1"), unit_price=Decimal("150")),
            ],
            notes="revised",
        )

        updated = await reconciler.update_invoice(100, draft)

        assert Decimal(updated["total_amount"]) == Decimal("750.00")
        assert updated["notes"] == "revised"
        assert updated["updated_at"] == "2024-01-15T10:30:00+00:00"
        items = seeded_datastore.rows("invoice_items")
        assert [Decimal(i["unit_price"]) for i in items] == [Decimal("300"), Decimal("150")]
        assert seeded_datastore.rows("ledger_entries") == []
        assert seeded_datastore.rows("payments") == []

    @pytest.mark.asyncio
    async def test_update_can_cancel(self, reconciler):
        draft = InvoiceDraft(
            customer_id=7,
            items=[InvoiceItem(quantity=Decimal("1"), unit_price=Decimal("1000"))],
            payment_status=PaymentStatus.CANCELLED,
        )

        updated = await reconciler.update_invoice(100, draft)

        assert updated["payment_status"] == "cancelled"
        with pytest.raises(InvalidPaymentError):
            await reconciler.record_partial_payment(100, Decimal("10"), "cash", "user_123")

    @pytest.mark.asyncio
    async def test_invalid_update_changes_nothing(self, reconciler, seeded_datastore):
        with pytest.raises(InvoiceValidationError):
            await reconciler.update_invoice(100, InvoiceDraft(customer_id=7))

        assert _invoice(seeded_datastore)["total_amount"] == "1000.00"

    @pytest.mark.asyncio
    async def test_cancel_open_invoice(self, reconciler):
        await reconciler.record_partial_payment(100, Decimal("400"), "cash", "user_123")

        cancelled = await reconciler.cancel_invoice(100)

        assert cancelled["payment_status"] == "cancelled"
        assert Decimal(cancelled["amount_paid"]) == Decimal("400")
        with pytest.raises(InvalidPaymentError):
            await reconciler.mark_invoice_as_paid(100, "cash", "user_123")

    @pytest.mark.asyncio
    async def test_paid_invoice_cannot_be_cancelled(self, reconciler, seeded_datastore):
        await reconciler.mark_invoice_as_paid(100, "cash", "user_123")

        with pytest.raises(InvoiceValidationError, match="paid"):
            await reconciler.cancel_invoice(100)

        assert _invoice(seeded_datastore)["payment_status"] == "paid"
