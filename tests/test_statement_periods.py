import pytest

from statement_periods import (
    Period, get_month_number, get_month_name, get_month_abbr, month_period_string,
    parse_statement_period, generate_month_range, is_period_contained,
    validate_statement_period_range, is_multi_month_period, format_period_display
)


class TestMonthHelpers:
    @pytest.mark.parametrize("name,expected", [
        ("January", 1), ("feb", 2), ("Sept", 9), ("dec.", 12), ("xyz", None), ("", None),
    ])
    def test_get_month_number(self, name, expected):
        assert get_month_number(name) == expected

    def test_names_and_abbreviations(self):
        assert get_month_name(3) == 'March'
        assert get_month_name(0) == 'Unknown'
        assert get_month_abbr(12) == 'DEC'
        assert get_month_abbr(13) == 'UNK'

    def test_month_period_string_leap_year(self):
        assert month_period_string(2024, 2) == '01/02/2024 - 29/02/2024'


class TestParseStatementPeriod:
    @pytest.mark.parametrize("text,expected", [
        ("01/01/2024 - 31/03/2024", Period(1, 2024, 3, 2024)),
        ("01.07.2023 to 31.12.2023", Period(7, 2023, 12, 2023)),
        ("Jan - Mar 2024", Period(1, 2024, 3, 2024)),
        ("January 2023 - February 2024", Period(1, 2023, 2, 2024)),
        ("03/2024", Period(3, 2024, 3, 2024)),
        ("March 2024", Period(3, 2024, 3, 2024)),
        ("Q2 2024", Period(4, 2024, 6, 2024)),
    ])
    def test_formats(self, text, expected):
        assert parse_statement_period(text) == expected

    def test_month_day_fallback(self):
        # 25 cannot be a month, so the dates are read as MM/DD
        assert parse_statement_period("12/25/2024 - 01/31/2025") == Period(12, 2024, 1, 2025)

    def test_unparseable(self):
        assert parse_statement_period("no dates here") is None
        assert parse_statement_period("") is None


class TestMonthRange:
    def test_across_year_boundary(self):
        assert generate_month_range(11, 2023, 2, 2024) == [
            {"month": 11, "year": 2023},
            {"month": 12, "year": 2023},
            {"month": 1, "year": 2024},
            {"month": 2, "year": 2024},
        ]

    def test_reversed_bounds(self):
        assert generate_month_range(2, 2024, 11, 2023) == generate_month_range(11, 2023, 2, 2024)

    def test_missing_input(self):
        assert generate_month_range(None, 2024, 3, 2024) == []


class TestContainment:
    def test_date_range(self):
        assert is_period_contained("01/01/2024 - 31/03/2024", 2, 2024)
        assert not is_period_contained("01/01/2024 - 31/03/2024", 4, 2024)

    def test_month_names(self):
        assert is_period_contained("Jan - Mar 2024", 3, 2024)
        assert not is_period_contained("Jan - Mar 2024", 3, 2023)

    def test_missing_values(self):
        assert not is_period_contained("", 1, 2024)
        assert not is_period_contained("Jan 2024", None, 2024)

    def test_validate_range(self):
        result = validate_statement_period_range("Jan - Mar 2024", 2, 2024)
        assert result["is_valid"] is True
        assert len(result["months_in_range"]) == 3
        assert result["message"] == "Statement period covers 3 months including selected month"

        outside = validate_statement_period_range("Jan - Mar 2024", 5, 2024)
        assert outside["is_valid"] is False

        assert validate_statement_period_range("", 1, 2024)["message"] == "No statement period found"
        assert validate_statement_period_range("??", 1, 2024)["message"] == "Could not parse statement period"

    def test_multi_month(self):
        assert is_multi_month_period("01/01/2024 - 31/03/2024")
        assert not is_multi_month_period("01/01/2024 - 31/01/2024")
        assert not is_multi_month_period("garbage")


def test_format_period_display():
    assert format_period_display(Period(3, 2024, 3, 2024)) == 'March 2024'
    assert format_period_display(Period(1, 2024, 3, 2024)) == 'January - March 2024'
    assert format_period_display(Period(11, 2023, 2, 2024)) == 'Nov 2023 - Feb 2024'
    assert format_period_display(None) == 'Unknown period'
