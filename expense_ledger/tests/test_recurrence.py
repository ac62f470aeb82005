import unittest
from datetime import date

from expense_ledger.recurrence import (
    add_months,
    advance_renewal_date,
    next_renewal_after,
    reminder_date_for,
    validate_custom_interval,
    validate_frequency,
)


class RenewalDateTests(unittest.TestCase):
    def test_monthly_clamps_to_end_of_shorter_month(self) -> None:
        self.assertEqual(advance_renewal_date(date(2026, 1, 31), "monthly"), date(2026, 2, 28))

    def test_monthly_keeps_clamped_day_afterwards(self) -> None:
        february = advance_renewal_date(date(2026, 1, 31), "monthly")

        self.assertEqual(advance_renewal_date(february, "monthly"), date(2026, 3, 28))

    def test_yearly_handles_leap_day(self) -> None:
        self.assertEqual(advance_renewal_date(date(2024, 2, 29), "yearly"), date(2025, 2, 28))

    def test_weekly_adds_seven_days(self) -> None:
        self.assertEqual(advance_renewal_date(date(2026, 12, 28), "weekly"), date(2027, 1, 4))

    def test_custom_uses_interval(self) -> None:
        self.assertEqual(
            advance_renewal_date(date(2026, 3, 1), "custom", custom_interval_days=45),
            date(2026, 4, 15),
        )

    def test_custom_without_interval_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            advance_renewal_date(date(2026, 3, 1), "custom")

    def test_interval_only_allowed_for_custom(self) -> None:
        with self.assertRaises(ValueError):
            validate_custom_interval("monthly", 30)
        self.assertIsNone(validate_custom_interval("monthly", None))
        self.assertEqual(validate_custom_interval("custom", 10), 10)

    def test_unknown_frequency_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            validate_frequency("fortnightly")
        self.assertEqual(validate_frequency(" Monthly "), "monthly")

    def test_next_renewal_after_catches_up(self) -> None:
        renewal = next_renewal_after(date(2026, 1, 15), "monthly", date(2026, 4, 2))

        self.assertEqual(renewal, date(2026, 4, 15))

    def test_next_renewal_after_always_advances(self) -> None:
        renewal = next_renewal_after(date(2026, 5, 1), "weekly", date(2026, 1, 1))

        self.assertEqual(renewal, date(2026, 5, 8))

    def test_reminder_date_counts_back_from_renewal(self) -> None:
        self.assertEqual(reminder_date_for(date(2026, 3, 5), 7), date(2026, 2, 26))

    def test_add_months_crosses_year(self) -> None:
        self.assertEqual(add_months(date(2026, 11, 30), 3, 30), date(2027, 2, 28))


if __name__ == "__main__":
    unittest.main()
