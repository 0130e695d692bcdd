import calendar
import datetime
import unittest

from src.flagvane import OperationalWindow

UTC = datetime.timezone.utc
H = datetime.timedelta(hours=1)


def _t(*args) -> datetime.datetime:
    return datetime.datetime(*args, tzinfo=UTC)


# 2025-01-06 is a Monday.
MONDAY = (2025, 1, 6)


class TestOperationalWindow(unittest.TestCase):
    def test_no_window_sentinel(self):
        self.assertFalse(OperationalWindow().has_window())
        self.assertTrue(OperationalWindow.always_open().has_window())
        self.assertTrue(OperationalWindow.create("00:00", "00:01").has_window())
        self.assertEqual(OperationalWindow().days, frozenset(calendar.Day))

    def test_same_day_window_boundaries(self):
        w = OperationalWindow.create("09:00", "17:00")
        cases = [
            (_t(*MONDAY, 8, 59, 59), False, "Outside time window"),
            (_t(*MONDAY, 9), True, "Within time window"),
            (_t(*MONDAY, 12, 30), True, "Within time window"),
            (_t(*MONDAY, 17), True, "Within time window"),
            (_t(*MONDAY, 17, 0, 1), False, "Outside time window"),
        ]
        for instant, active, reason in cases:
            with self.subTest(instant=instant):
                self.assertEqual(w.is_active_at(instant), (active, reason))

    def test_last_second_of_day(self):
        w = OperationalWindow.always_open()
        self.assertEqual(w.is_active_at(_t(*MONDAY, 23, 59, 59, 999999)), (True, "Within time window"))
        self.assertEqual(w.is_active_at(_t(*MONDAY, 0)), (True, "Within time window"))

        w = OperationalWindow.create("09:00", "17:00")
        self.assertEqual(w.is_active_at(_t(*MONDAY, 17, 0, 0, 500000)), (True, "Within time window"))
        self.assertEqual(w.is_active_at(_t(*MONDAY, 8, 59, 59, 999999)), (False, "Outside time window"))

    def test_overnight_window(self):
        w = OperationalWindow.create("22:00", "06:00")
        cases = [
            (_t(*MONDAY, 23), True),
            (_t(*MONDAY, 3), True),
            (_t(*MONDAY, 22), True),
            (_t(*MONDAY, 6), True),
            (_t(*MONDAY, 12), False),
            (_t(*MONDAY, 21, 59, 59), False),
            (_t(*MONDAY, 6, 0, 1), False),
        ]
        for instant, active in cases:
            with self.subTest(instant=instant):
                self.assertEqual(w.is_active_at(instant)[0], active)

    def test_time_zone_conversion(self):
        # Sydney is UTC+11 in January.
        w = OperationalWindow.create("09:00", "17:00", "Australia/Sydney")
        self.assertEqual(w.is_active_at(_t(*MONDAY, 0)), (True, "Within time window"))
        self.assertEqual(w.is_active_at(_t(*MONDAY, 8)), (False, "Outside time window"))

    def test_allowed_days_use_local_weekday(self):
        w = OperationalWindow.create("09:00", "17:00", "Australia/Sydney", ["monday"])
        # Sunday 23:00 in UTC is Monday 10:00 in Sydney.
        self.assertEqual(w.is_active_at(_t(2025, 1, 5, 23)), (True, "Within time window"))
        # Monday 23:00 in UTC is Tuesday 10:00 in Sydney.
        self.assertEqual(w.is_active_at(_t(*MONDAY, 23)), (False, "Outside allowed days"))

    def test_time_zone_override(self):
        w = OperationalWindow.create("09:00", "17:00")
        instant = _t(*MONDAY, 20)  # 15:00 in New York
        self.assertEqual(w.is_active_at(instant), (False, "Outside time window"))
        self.assertEqual(w.is_active_at(instant, "America/New_York"), (True, "Within time window"))
        self.assertEqual(w.is_active_at(instant, "Eastern Standard Time"), (True, "Within time window"))
        self.assertEqual(w.is_active_at(instant, "Mars/Olympus"), (False, "Invalid timezone: Mars/Olympus"))

    def test_unresolvable_stored_zone(self):
        w = OperationalWindow(datetime.timedelta(hours=9), datetime.timedelta(hours=17), "Nowhere/Land")
        self.assertEqual(w.is_active_at(_t(*MONDAY, 12)), (False, "Invalid timezone: Nowhere/Land"))

    def test_create_validation(self):
        with self.assertRaisesRegex(ValueError, "invalid timezone identifier"):
            OperationalWindow.create("09:00", "17:00", "Nowhere/Land")
        with self.assertRaisesRegex(ValueError, "between 00:00:00 and 23:59:59"):
            OperationalWindow.create("09:00", "24:00")
        with self.assertRaisesRegex(ValueError, "between 00:00:00 and 23:59:59"):
            OperationalWindow.create(-H, 2 * H)
        with self.assertRaisesRegex(ValueError, "invalid time of day"):
            OperationalWindow.create("10:75", "11:00")
        with self.assertRaisesRegex(ValueError, "invalid day of week"):
            OperationalWindow.create("09:00", "17:00", days=["funday"])
        with self.assertRaises(ValueError):
            OperationalWindow.create("09:00", "17:00", days=[7])

    def test_create_inputs(self):
        a = OperationalWindow.create(datetime.time(9, 30), datetime.time(17), None, [0, "monday", calendar.Day.MONDAY])
        b = OperationalWindow.create("9:30", "17:00:00", "UTC", [calendar.MONDAY])
        self.assertEqual(a, b)
        self.assertEqual(a.days, frozenset({calendar.Day.MONDAY}))
        self.assertEqual(a.start, datetime.timedelta(hours=9, minutes=30))
        self.assertEqual(a.time_zone, "UTC")

        w = OperationalWindow.create("09:00", "17:00", days=[])
        self.assertEqual(w.days, frozenset(calendar.Day))
