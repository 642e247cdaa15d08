from datetime import date

import pytest
from pydantic import ValidationError

from marketplace.card_input import (
    expiry_in_future,
    luhn_valid,
    mask_card_number,
    mask_cvc,
    mask_expiry,
    sanitize_price,
)
from marketplace.checkout import CardForm, mask_card_fields


def test_card_number_keeps_digits_and_spaces():
    assert mask_card_number("4111-1111-1111-1111abc") == "4111111111111111"
    assert mask_card_number("4111 1111 1111 1111 9999") == "4111 1111 1111 1111"


@pytest.mark.parametrize(
    "raw, masked",
    [("1", "1"), ("12", "12"), ("122", "12/2"), ("1225", "12/25"), ("12/25/99", "12/25")],
)
def test_expiry_mask(raw, masked):
    assert mask_expiry(raw) == masked


def test_cvc_mask():
    assert mask_cvc("12a34 5") == "1234"


def test_price_sanitizer():
    assert sanitize_price("$1,299.99") == "1299.99"
    assert sanitize_price("abc") == ""


def test_luhn():
    assert luhn_valid("4111 1111 1111 1111")
    assert not luhn_valid("4111 1111 1111 1112")
    assert not luhn_valid("4111")


def test_expiry_in_future():
    assert expiry_in_future("12/25", today=date(2025, 12, 31))
    assert not expiry_in_future("11/25", today=date(2025, 12, 1))
    assert not expiry_in_future("13/30", today=date(2025, 1, 1))
    assert not expiry_in_future("1", today=date(2025, 1, 1))


def test_card_form_masks_before_validating():
    form = CardForm(card_number="4111-1111-1111-1111", card_name=" ana ", card_expiry="1299", card_cvc="123x")

    assert form.card_number == "4111111111111111"
    assert form.card_expiry == "12/99"
    assert form.card_cvc == "123"
    assert form.card_name == "ANA"
    assert form.last_four == "1111"


def test_card_form_rejects_bad_number():
    with pytest.raises(ValidationError):
        CardForm(card_number="1234 5678", card_name="Ana", card_expiry="12/99", card_cvc="123")


def test_mask_card_fields_reports_invalid_fields():
    result = mask_card_fields({"card_number": "4111 1111 1111 1111", "card_expiry": "0101", "card_cvc": "1"})

    assert result["fields"]["card_expiry"] == "01/01"
    assert set(result["errors"]) == {"card_name", "card_expiry", "card_cvc"}
    assert result["valid"] is False
