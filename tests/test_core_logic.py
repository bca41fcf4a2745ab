"""Tests for the business logic layer running against a real workbook."""

from __future__ import annotations

import re
from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from ledger_cache import constants, core_logic, data_manager
from ledger_cache.errors import LockTimeoutError, SchemaError

MOMENT = datetime(2026, 3, 2, 14, 30, tzinfo=UTC)


def _invoice(entity="Acme", number="INV-1", amount="100.00", **kwargs):
    return core_logic.InvoiceCommand(
        entity_name=entity,
        document_number=number,
        total_amount=Decimal(amount),
        timestamp=MOMENT,
        **kwargs,
    )


def _payment(entity="Acme", number="INV-1", amount="40.00", transaction_id="TX-1", **kwargs):
    return core_logic.PaymentCommand(
        entity_name=entity,
        document_number=number,
        amount=Decimal(amount),
        transaction_id=transaction_id,
        timestamp=MOMENT,
        **kwargs,
    )


def _stored_documents(context):
    store = context.document_store
    return [
        data_manager.deserialize_document(raw, store.columns, row_number=row_number)
        for row_number, raw in store.read_all()
    ]


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_wires_caches(runtime_context):
    """The context exposes cold caches built over both sheets."""

    assert runtime_context.settings.ttl_seconds == 300.0
    assert runtime_context.settings.default_creator == "tester"
    assert not runtime_context.documents.loaded
    assert not runtime_context.transactions.loaded
    assert runtime_context.lock.timeout == pytest.approx(0.05)


def test_ensure_schema_version_rejects_mismatch(config_factory):
    bundle = config_factory(schema_version="0.9.0")
    context = core_logic.load_runtime_context(bundle.config_path)

    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(context)


def test_missing_columns_fail_at_startup(config_factory):
    """A workbook header lacking required columns is rejected before any lookup."""

    bundle = config_factory(
        sheet_columns={
            constants.SheetName.DOCUMENTS.value: ["EntityName", "DocumentNumber"],
            constants.SheetName.TRANSACTIONS.value: constants.TRANSACTION_COLUMNS,
        }
    )

    with pytest.raises(SchemaError, match="BalanceDue"):
        core_logic.load_runtime_context(bundle.config_path)


def test_missing_sheet_fails_at_startup(config_factory):
    bundle = config_factory(
        sheet_columns={constants.SheetName.DOCUMENTS.value: constants.DOCUMENT_COLUMNS}
    )

    with pytest.raises(KeyError):
        core_logic.load_runtime_context(bundle.config_path)


def test_load_runtime_context_missing_workbook(config_file):
    workbook_path = core_logic.load_runtime_context(config_file).settings.data_file
    workbook_path.unlink()

    with pytest.raises(FileNotFoundError):
        core_logic.load_runtime_context(config_file)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def test_record_invoice_appends_row_and_caches_it(runtime_context):
    record = core_logic.record_invoice(runtime_context, _invoice())

    assert record.row_number == 2
    assert record.status == constants.DocumentStatus.UNPAID.value
    assert record.creator == "tester"
    assert record.created_at == MOMENT.isoformat()
    assert record.system_id.startswith("DOC")
    assert runtime_context.documents.find_by_key("acme", "inv-1") == record
    assert _stored_documents(runtime_context) == [record]
    assert core_logic.outstanding_balance(runtime_context, "Acme") == Decimal("100.00")


def test_record_invoice_rejects_duplicate_key(runtime_context):
    """Keys are compared without regard to case or surrounding whitespace."""

    core_logic.record_invoice(runtime_context, _invoice())

    with pytest.raises(core_logic.DuplicateDocumentError):
        core_logic.record_invoice(runtime_context, _invoice(entity=" ACME ", number="inv-1"))
    assert len(_stored_documents(runtime_context)) == 1
    assert not runtime_context.lock.locked()


def test_record_invoice_validates_input(runtime_context):
    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.record_invoice(runtime_context, _invoice(entity="  "))
    with pytest.raises(ValueError):
        core_logic.record_invoice(runtime_context, _invoice(amount="-1"))
    assert _stored_documents(runtime_context) == []


def test_zero_amount_invoice_is_stored_settled(runtime_context):
    record = core_logic.record_invoice(
        runtime_context, _invoice(amount="0", document_date=date(2026, 2, 1))
    )

    assert record.status == constants.DocumentStatus.PAID.value
    assert record.settled_date == "2026-02-01"
    assert core_logic.list_open_documents(runtime_context, "Acme") == []
    assert len(core_logic.list_documents(runtime_context, "Acme")) == 1


def test_record_invoice_times_out_when_lock_is_held(runtime_context):
    with runtime_context.lock.hold():
        with pytest.raises(LockTimeoutError):
            core_logic.record_invoice(runtime_context, _invoice())
    assert _stored_documents(runtime_context) == []


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def test_partial_payment_updates_store_and_caches(runtime_context):
    document = core_logic.record_invoice(runtime_context, _invoice())

    transaction = core_logic.record_payment(runtime_context, _payment(amount="40.00", method="transfer"))

    assert transaction.row_number == 2
    assert transaction.linked_document_id == document.system_id
    assert transaction.transaction_type == constants.TransactionType.PAYMENT.value
    (stored,) = _stored_documents(runtime_context)
    assert stored.balance_due == Decimal("60.00")
    assert stored.total_settled == Decimal("40.00")
    assert stored.status == constants.DocumentStatus.PARTIAL.value
    assert stored.settled_date is None

    cached = runtime_context.documents.find_by_key("Acme", "INV-1")
    assert cached.balance_due == Decimal("60.00")
    assert core_logic.outstanding_balance(runtime_context, "Acme") == Decimal("60.00")
    assert runtime_context.transactions.is_duplicate("TX-1")
    assert core_logic.list_document_transactions(runtime_context, "acme", "INV-1") == [transaction]


def test_full_payment_moves_document_to_settled(runtime_context):
    core_logic.record_invoice(runtime_context, _invoice())
    core_logic.record_invoice(runtime_context, _invoice(number="INV-2", amount="25.00"))

    core_logic.record_payment(runtime_context, _payment(amount="100.00"))

    (open_document,) = core_logic.list_open_documents(runtime_context, "Acme")
    assert open_document.document_number == "INV-2"
    assert core_logic.outstanding_balance(runtime_context, "Acme") == Decimal("25.00")
    settled = runtime_context.documents.find_by_key("Acme", "INV-1")
    assert settled.status == constants.DocumentStatus.PAID.value
    assert settled.settled_date == MOMENT.date().isoformat()
    tags = {s.document_number: s.partition for s in core_logic.list_documents(runtime_context, "Acme")}
    assert tags == {"INV-1": constants.Partition.INACTIVE, "INV-2": constants.Partition.ACTIVE}


def test_duplicate_transaction_is_rejected(runtime_context):
    core_logic.record_invoice(runtime_context, _invoice())
    core_logic.record_payment(runtime_context, _payment(amount="10.00"))

    with pytest.raises(core_logic.DuplicateTransactionError):
        core_logic.record_payment(runtime_context, _payment(amount="10.00"))

    assert core_logic.outstanding_balance(runtime_context, "Acme") == Decimal("90.00")
    assert len(runtime_context.transaction_store.read_all()) == 1


def test_overpayment_is_rejected(runtime_context):
    core_logic.record_invoice(runtime_context, _invoice())

    with pytest.raises(core_logic.BusinessRuleViolation, match="exceeds"):
        core_logic.record_payment(runtime_context, _payment(amount="150.00"))

    assert runtime_context.transaction_store.read_all() == []
    assert not runtime_context.transactions.is_duplicate("TX-1")
    assert not runtime_context.lock.locked()


def test_payment_for_unknown_document(runtime_context):
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.record_payment(runtime_context, _payment(number="INV-404"))


def test_payment_requires_positive_amount(runtime_context):
    core_logic.record_invoice(runtime_context, _invoice())

    with pytest.raises(ValueError):
        core_logic.record_payment(runtime_context, _payment(amount="0"))


def test_payment_without_id_generates_one(runtime_context):
    core_logic.record_invoice(runtime_context, _invoice())

    transaction = core_logic.record_payment(runtime_context, _payment(transaction_id=None))

    assert transaction.transaction_id == "TX20260302143000000000"


def test_payments_at_same_instant_get_distinct_generated_ids(runtime_context):
    core_logic.record_invoice(runtime_context, _invoice())

    first, second = core_logic.record_payments(
        runtime_context,
        [_payment(transaction_id=None, amount="10"), _payment(transaction_id=None, amount="15")],
    )

    assert first.transaction_id == "TX20260302143000000000"
    assert second.transaction_id == "TX20260302143000000000-1"
    assert core_logic.outstanding_balance(runtime_context, "Acme") == Decimal("75.00")


def test_payment_invalidates_entity_even_on_failure(runtime_context, monkeypatch):
    core_logic.record_invoice(runtime_context, _invoice())
    spy = Mock(wraps=runtime_context.documents.invalidate_entity)
    monkeypatch.setattr(runtime_context.documents, "invalidate_entity", spy)

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.record_payment(runtime_context, _payment(amount="500"))

    assert spy.call_count == 1
    assert spy.call_args.args[1] == "Acme"


def test_batch_invalidates_each_entity_once(runtime_context, monkeypatch):
    """Several payments for the same entity share one invalidation."""

    core_logic.record_invoice(runtime_context, _invoice())
    core_logic.record_invoice(runtime_context, _invoice(number="INV-2", amount="50"))
    core_logic.record_invoice(runtime_context, _invoice(entity="Globex", number="G-1", amount="30"))
    spy = Mock(wraps=runtime_context.documents.invalidate_entity)
    monkeypatch.setattr(runtime_context.documents, "invalidate_entity", spy)

    transactions = core_logic.record_payments(
        runtime_context,
        [
            _payment(amount="10", transaction_id="TX-1"),
            _payment(number="INV-2", amount="50", transaction_id="TX-2"),
            _payment(entity="acme", amount="5", transaction_id="TX-3"),
            _payment(entity="Globex", number="G-1", amount="30", transaction_id="TX-4"),
        ],
    )

    assert len(transactions) == 4
    assert spy.call_count == 2
    assert {call.args[1] for call in spy.call_args_list} == {"Acme", "Globex"}
    assert core_logic.outstanding_balance(runtime_context, "Acme") == Decimal("85")
    assert core_logic.outstanding_balance(runtime_context, "Globex") == Decimal("0")


def test_batch_failure_keeps_earlier_payments(runtime_context, monkeypatch):
    core_logic.record_invoice(runtime_context, _invoice())
    spy = Mock(wraps=runtime_context.documents.invalidate_entity)
    monkeypatch.setattr(runtime_context.documents, "invalidate_entity", spy)

    with pytest.raises(core_logic.DuplicateTransactionError):
        core_logic.record_payments(
            runtime_context,
            [_payment(amount="10", transaction_id="TX-1"), _payment(amount="10", transaction_id="TX-1")],
        )

    assert spy.call_count == 1
    assert core_logic.outstanding_balance(runtime_context, "Acme") == Decimal("90.00")
    assert not runtime_context.lock.locked()


def test_credit_note_type_is_recorded(runtime_context):
    core_logic.record_invoice(runtime_context, _invoice())

    transaction = core_logic.record_payment(
        runtime_context,
        _payment(transaction_type=constants.TransactionType.CREDIT_NOTE, reference="CN-4"),
    )

    assert transaction.transaction_type == "CREDIT_NOTE"
    assert transaction.reference == "CN-4"


# ---------------------------------------------------------------------------
# Persistence and freshness
# ---------------------------------------------------------------------------


def test_persist_then_refresh_round_trips_workbook(runtime_context):
    core_logic.record_invoice(runtime_context, _invoice())
    core_logic.record_payment(runtime_context, _payment(amount="40.00"))
    core_logic.persist_context(runtime_context)

    refreshed = core_logic.refresh_context(runtime_context)

    assert refreshed.workbook is not runtime_context.workbook
    assert core_logic.outstanding_balance(refreshed, "Acme") == Decimal("60")
    assert refreshed.transactions.is_duplicate("TX-1")


def test_refresh_discards_unsaved_changes(runtime_context):
    core_logic.record_invoice(runtime_context, _invoice())

    refreshed = core_logic.refresh_context(runtime_context)

    assert refreshed.documents.find_by_key("Acme", "INV-1") is None


def test_external_edit_visible_after_ttl(runtime_context, clock):
    """Rows written behind the cache's back show up once the TTL expires."""

    context = core_logic.build_runtime_context(runtime_context.settings, runtime_context.workbook, clock=clock)
    core_logic.record_invoice(context, _invoice())
    context.document_store.append_row(
        {"EntityName": "Acme", "DocumentNumber": "INV-X", "TotalAmount": 5, "BalanceDue": 5}
    )

    assert core_logic.outstanding_balance(context, "Acme") == Decimal("100.00")
    clock.advance(context.settings.ttl_seconds + 1)
    assert core_logic.outstanding_balance(context, "Acme") == Decimal("105.00")


def test_partition_stats_reflect_context(runtime_context):
    core_logic.record_invoice(runtime_context, _invoice())
    core_logic.record_invoice(runtime_context, _invoice(number="INV-2", amount="0"))

    stats = core_logic.partition_stats(runtime_context)

    assert (stats.active_count, stats.inactive_count) == (1, 1)
    assert stats.memory_reduction_estimate == pytest.approx(0.5)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_generate_transaction_id_format():
    assert core_logic.generate_transaction_id(when=MOMENT) == "TX20260302143000000000"
    assert re.fullmatch(r"DOC\d{20}", core_logic.generate_transaction_id(prefix="DOC"))


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-0.01")])
def test_require_positive_money_rejects(amount):
    with pytest.raises(ValueError):
        core_logic.require_positive_money(amount)


def test_require_nonnegative_money_accepts_zero():
    core_logic.require_nonnegative_money(Decimal("0"))
    with pytest.raises(ValueError):
        core_logic.require_nonnegative_money(Decimal("-5"))


def test_build_document_record_uses_command_fields():
    command = replace(_invoice(), system_id="DOC-FIXED", origin="import")

    record = core_logic.build_document_record(command, timestamp=MOMENT, creator="clerk")

    assert record.system_id == "DOC-FIXED"
    assert record.date == "2026-03-02"
    assert record.balance_due == Decimal("100.00")
    assert record.total_settled == Decimal("0.00")
    assert record.origin == "import"
    assert record.creator == "clerk"
