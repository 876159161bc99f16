"""Tests for the read-only validators gating return transitions."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from returns_engine import core_logic, data_manager, validation
from returns_engine.constants import ItemType, ReturnStatus, ReturnType
from returns_engine.validation import ReturnForm, ReturnFormItem, ValidationFailure


def _form(**overrides):
    base = ReturnForm(
        return_type=ReturnType.SALES_RETURN.value,
        invoice_id="INV-1",
        items=(ReturnFormItem("FP-1", ItemType.FINISHED_PRODUCTS.value, Decimal("2"), Decimal("5")),),
    )
    return replace(base, **overrides)


# ---------------------------------------------------------------------------
# Draft form
# ---------------------------------------------------------------------------


def test_valid_form_passes(store, seed_invoice):
    seed_invoice(store)

    assert validation.validate_return_form(store, _form()) == validation.ValidationResult.ok()


@pytest.mark.parametrize(
    "overrides, failure",
    [
        ({"return_type": "exchange"}, ValidationFailure.INVALID_RETURN_TYPE),
        ({"invoice_id": ""}, ValidationFailure.MISSING_INVOICE),
        ({"items": ()}, ValidationFailure.NO_ITEMS),
        (
            {"items": (ReturnFormItem("FP-1", "finished_products", Decimal("0"), Decimal("5")),)},
            ValidationFailure.NO_ITEMS,
        ),
        (
            {"items": (ReturnFormItem("FP-1", "finished_products", Decimal("1"), Decimal("5"), selected=False),)},
            ValidationFailure.NO_ITEMS,
        ),
        (
            {"items": (ReturnFormItem("FP-1", "gadgets", Decimal("1"), Decimal("5")),)},
            ValidationFailure.INVALID_ITEM_TYPE,
        ),
        (
            {"items": (ReturnFormItem("FP-1", "finished_products", Decimal("1"), Decimal("-1")),)},
            ValidationFailure.INVALID_PRICE,
        ),
        (
            {
                "items": (
                    ReturnFormItem("FP-1", "finished_products", Decimal("3"), Decimal("5"), max_quantity=Decimal("2")),
                )
            },
            ValidationFailure.EXCEEDS_MAX_QUANTITY,
        ),
        ({"amount": Decimal("-1")}, ValidationFailure.INVALID_AMOUNT),
        ({"date_iso": "01/02/2024"}, ValidationFailure.INVALID_DATE),
        ({"invoice_id": "INV-404"}, ValidationFailure.UNKNOWN_INVOICE),
    ],
)
def test_invalid_forms_report_failure_code(store, seed_invoice, overrides, failure):
    seed_invoice(store)

    result = validation.validate_return_form(store, _form(**overrides))

    assert not result.valid
    assert result.failure is failure
    assert result.message


def test_selected_items_drops_unselected_and_zero_lines():
    form = _form(
        items=(
            ReturnFormItem("A", "raw_materials", Decimal("1"), Decimal("1")),
            ReturnFormItem("B", "raw_materials", Decimal("0"), Decimal("1")),
            ReturnFormItem("C", "raw_materials", Decimal("1"), Decimal("1"), selected=False),
        )
    )

    assert [item.item_id for item in form.selected_items()] == ["A"]


# ---------------------------------------------------------------------------
# Before confirm
# ---------------------------------------------------------------------------


def test_confirm_validation_accepts_sales_draft_without_stock_check(store, draft_return):
    document = draft_return(store, [(ItemType.FINISHED_PRODUCTS, "FP-1", "2", "5")])

    assert validation.validate_before_confirm(store, document.return_id).valid


def test_confirm_validation_unknown_return(store):
    result = validation.validate_before_confirm(store, "R-missing")

    assert result.failure is ValidationFailure.NOT_FOUND


def test_confirm_validation_rejects_non_draft(store, draft_return):
    document = draft_return(store, [(ItemType.FINISHED_PRODUCTS, "FP-1", "2", "5")])
    core_logic.transition_status(store, document, ReturnStatus.CONFIRMED)

    result = validation.validate_before_confirm(store, document.return_id)

    assert result.failure is ValidationFailure.INVALID_STATUS


def test_confirm_validation_rejects_zero_amount(store, draft_return):
    document = draft_return(store, [(ItemType.FINISHED_PRODUCTS, "FP-1", "2", "0")])

    result = validation.validate_before_confirm(store, document.return_id)

    assert result.failure is ValidationFailure.INVALID_AMOUNT


def test_confirm_validation_rejects_missing_items(store, draft_return):
    document = draft_return(store, [(ItemType.FINISHED_PRODUCTS, "FP-1", "2", "5")])
    data_manager.delete_return(store.workbook, document.return_id)
    data_manager.append_return(store.workbook, document.header)

    result = validation.validate_before_confirm(store, document.return_id)

    assert result.failure is ValidationFailure.NO_ITEMS


def test_confirm_validation_rejects_non_positive_item_quantity(store, draft_return):
    document = draft_return(store, [(ItemType.FINISHED_PRODUCTS, "FP-1", "2", "5")])
    data_manager.append_return_item(store.workbook, replace(document.items[0], line_no=2, quantity=Decimal("0")))

    result = validation.validate_before_confirm(store, document.return_id)

    assert result.failure is ValidationFailure.INVALID_QUANTITY


def test_confirm_validation_checks_purchase_stock(store, seed_stock, draft_return):
    seed_stock(store, "RM-1", "3")
    document = draft_return(
        store,
        [(ItemType.RAW_MATERIALS, "RM-1", "2", "5"), (ItemType.RAW_MATERIALS, "RM-1", "2", "5")],
        return_type=ReturnType.PURCHASE_RETURN,
    )

    result = validation.validate_before_confirm(store, document.return_id)

    assert result.failure is ValidationFailure.INSUFFICIENT_STOCK
    assert "need 4" in result.message


def test_confirm_validation_reports_unknown_purchase_item(store, draft_return):
    document = draft_return(
        store,
        [(ItemType.RAW_MATERIALS, "RM-404", "1", "5")],
        return_type=ReturnType.PURCHASE_RETURN,
    )

    result = validation.validate_before_confirm(store, document.return_id)

    assert result.failure is ValidationFailure.UNKNOWN_ITEM


def test_validators_never_mutate(store, seed_stock, draft_return):
    seed_stock(store, "RM-1", "1")
    document = draft_return(
        store,
        [(ItemType.RAW_MATERIALS, "RM-1", "5", "5")],
        return_type=ReturnType.PURCHASE_RETURN,
    )

    validation.validate_before_confirm(store, document.return_id)
    validation.validate_before_cancel(store, document.return_id)
    validation.validate_before_delete(store, document.return_id)

    assert data_manager.get_return(store.workbook, document.return_id) == document.header
    assert data_manager.get_item_quantity(store.workbook, ItemType.RAW_MATERIALS, "RM-1") == Decimal("1")


# ---------------------------------------------------------------------------
# Before cancel / delete
# ---------------------------------------------------------------------------


def test_cancel_validation_requires_confirmed(store, draft_return):
    document = draft_return(store, [(ItemType.FINISHED_PRODUCTS, "FP-1", "2", "5")])

    assert validation.validate_before_cancel(store, document.return_id).failure is ValidationFailure.INVALID_STATUS

    core_logic.transition_status(store, document, ReturnStatus.CONFIRMED)
    assert validation.validate_before_cancel(store, document.return_id).valid


def test_delete_validation_requires_draft(store, draft_return):
    document = draft_return(store, [(ItemType.FINISHED_PRODUCTS, "FP-1", "2", "5")])

    assert validation.validate_before_delete(store, document.return_id).valid

    core_logic.transition_status(store, document, ReturnStatus.CONFIRMED)
    assert validation.validate_before_delete(store, document.return_id).failure is ValidationFailure.INVALID_STATUS


def test_cancel_and_delete_validation_unknown_return(store):
    assert validation.validate_before_cancel(store, "nope").failure is ValidationFailure.NOT_FOUND
    assert validation.validate_before_delete(store, "nope").failure is ValidationFailure.NOT_FOUND


def test_unreadable_stored_return_reports_incomplete_data(store, draft_return):
    document = draft_return(store, [(ItemType.FINISHED_PRODUCTS, "FP-1", "2", "5")])
    data_manager.append_return_item(store.workbook, replace(document.items[0], line_no=2, item_type="gadgets"))

    for validator in (
        validation.validate_before_confirm,
        validation.validate_before_cancel,
        validation.validate_before_delete,
    ):
        result = validator(store, document.return_id)
        assert result.failure is ValidationFailure.INCOMPLETE_DATA
