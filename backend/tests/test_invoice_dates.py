"""Tests for recurring schedule calendar rules."""

from datetime import date, timedelta

import pytest

from billing_engine.models.invoice import InvoiceFrequency
from billing_engine.services.invoice_dates import advance, is_due, payment_term, successor_dates


class TestAdvance:
    @pytest.mark.parametrize(
        "start,frequency,expected",
        [
            (date(2024, 1, 1), InvoiceFrequency.WEEKLY, date(2024, 1, 8)),
            (date(2024, 12, 28), InvoiceFrequency.WEEKLY, date(2025, 1, 4)),
            (date(2024, 1, 1), InvoiceFrequency.BIWEEKLY, date(2024, 1, 15)),
            (date(2024, 2, 1), InvoiceFrequency.MONTHLY, date(2024, 3, 1)),
            (date(2024, 12, 15), InvoiceFrequency.MONTHLY, date(2025, 1, 15)),
            (date(2024, 11, 30), InvoiceFrequency.QUARTERLY, date(2025, 2, 28)),
            (date(2024, 1, 15), InvoiceFrequency.QUARTERLY, date(2024, 4, 15)),
            (date(2024, 2, 29), InvoiceFrequency.ANNUALLY, date(2025, 2, 28)),
            (date(2023, 6, 1), InvoiceFrequency.ANNUALLY, date(2024, 6, 1)),
        ],
    )
    def test_frequencies(self, start, frequency, expected):
        assert advance(start, frequency) == expected

    def test_month_end_clamps_to_shorter_month(self):
        assert advance(date(2024, 1, 31), InvoiceFrequency.MONTHLY) == date(2024, 2, 29)
        assert advance(date(2023, 1, 31), "monthly") == date(2023, 2, 28)
        assert advance(date(2024, 3, 31), "monthly") == date(2024, 4, 30)

    def test_clamped_day_carries_forward(self):
        # Jan 31 -> Feb 29 -> Mar 29: each step starts from the clamped date
        feb = advance(date(2024, 1, 31), "monthly")
        assert advance(feb, "monthly") == date(2024, 3, 29)

    def test_unknown_frequency_rejected(self):
        with pytest.raises(ValueError):
            advance(date(2024, 1, 1), "daily")


def test_successor_dates_preserve_payment_term():
    issue, due = successor_dates(date(2024, 1, 1), date(2024, 1, 15), date(2024, 2, 2))
    assert issue == date(2024, 2, 2)
    assert due == date(2024, 2, 16)


def test_payment_term():
    assert payment_term(date(2024, 1, 1), date(2024, 1, 31)) == timedelta(days=30)


def test_is_due():
    today = date(2024, 2, 1)
    assert is_due(date(2024, 2, 1), today)
    assert is_due(date(2024, 1, 1), today)
    assert not is_due(date(2024, 2, 2), today)
    assert not is_due(None, today)
