from datetime import date

import pytest

from sellerpulse.agent.dates import month_range, range_for_filter


@pytest.mark.parametrize(
    "filter_type, today, expected",
    [
        ("currentmonth", date(2024, 2, 10), (date(2024, 2, 1), date(2024, 2, 29))),
        ("previousmonth", date(2024, 3, 15), (date(2024, 2, 1), date(2024, 2, 29))),
        ("previousmonth", date(2024, 1, 5), (date(2023, 12, 1), date(2023, 12, 31))),
        ("currentyear", date(2024, 5, 20), (date(2024, 1, 1), date(2024, 5, 20))),
        ("lastyear", date(2024, 5, 20), (date(2023, 1, 1), date(2023, 12, 31))),
    ],
)
def test_range_for_filter(filter_type: str, today: date, expected: tuple) -> None:
    """Each filter type maps to its inclusive date range."""
    assert range_for_filter(filter_type, today) == expected


def test_unknown_or_missing_filter_means_previous_month() -> None:
    """An unknown or missing filter falls back to the previous month."""
    today = date(2024, 3, 15)
    assert range_for_filter(None, today) == range_for_filter("previousmonth", today)
    assert range_for_filter("fortnight", today) == range_for_filter("previousmonth", today)
    assert range_for_filter("CurrentMonth", today) == (date(2024, 3, 1), date(2024, 3, 31))


def test_month_range() -> None:
    """A month span runs from the first day of the start month to the last day of the end month."""
    assert month_range("2023-11", "2024-02") == (date(2023, 11, 1), date(2024, 2, 29))
    with pytest.raises(ValueError):
        month_range("2024-03", "2024-01")
