"""Reference generation, masking and date arithmetic helpers"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from utils.datetime_helpers import add_months, ensure_aware_utc
from utils.helpers import (
    generate_disbursement_reference,
    generate_repayment_reference,
    is_payment_reference,
    mask_account_number,
    to_decimal,
)


class TestReferences:

    def test_disbursement_reference_shape(self):
        reference = generate_disbursement_reference()

        assert reference.startswith("DISB_")
        assert is_payment_reference(reference, "DISB")
        assert not is_payment_reference(reference, "RPY")

    def test_references_are_unique(self):
        references = {generate_repayment_reference() for _ in range(500)}

        assert len(references) == 500

    @pytest.mark.parametrize("value", [None, "", "DISB_123_ABCDEF", "disb_1718000000000_abcdef"])
    def test_malformed_references(self, value):
        assert not is_payment_reference(value)


class TestMasking:

    def test_keeps_last_four(self):
        assert mask_account_number("0123456789") == "******6789"

    def test_short_and_missing(self):
        assert mask_account_number("123") == "***"
        assert mask_account_number(None) == "****"


class TestToDecimal:

    def test_coercions(self):
        assert to_decimal("12.50") == Decimal("12.50")
        assert to_decimal(3) == Decimal("3")
        assert to_decimal(None) == Decimal("0")
        assert to_decimal("not a number") == Decimal("0")


class TestAddMonths:

    @pytest.mark.parametrize("start,months,expected", [
        (datetime(2024, 1, 15), 1, datetime(2024, 2, 15)),
        (datetime(2024, 1, 31), 1, datetime(2024, 2, 29)),
        (datetime(2023, 1, 31), 1, datetime(2023, 2, 28)),
        (datetime(2024, 12, 10), 1, datetime(2025, 1, 10)),
        (datetime(2024, 3, 31), 13, datetime(2025, 4, 30)),
    ])
    def test_calendar_months(self, start, months, expected):
        assert add_months(start, months) == expected

    def test_time_and_zone_preserved(self):
        start = datetime(2024, 5, 20, 14, 30, tzinfo=timezone.utc)

        assert add_months(start) == datetime(2024, 6, 20, 14, 30, tzinfo=timezone.utc)


class TestEnsureAwareUtc:

    def test_naive_treated_as_utc(self):
        assert ensure_aware_utc(datetime(2024, 1, 1, 12)) == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)

    def test_other_zones_converted(self):
        lagos = timezone(timedelta(hours=1))

        converted = ensure_aware_utc(datetime(2024, 1, 1, 12, tzinfo=lagos))

        assert converted.hour == 11
        assert converted.tzinfo == timezone.utc

    def test_none_passthrough(self):
        assert ensure_aware_utc(None) is None
