from datetime import time, timedelta
import unittest

from muadhin.timeutils import format_hhmm, format_remaining, parse_hhmm, sanitize_time


class TimeUtilsTests(unittest.TestCase):
    def test_parse_hhmm_with_colon(self) -> None:
        self.assertEqual(parse_hhmm("05:30"), time(5, 30))

    def test_parse_hhmm_with_dot(self) -> None:
        self.assertEqual(parse_hhmm("6.15"), time(6, 15))

    def test_parse_hhmm_with_seconds(self) -> None:
        self.assertEqual(parse_hhmm("04:45:12"), time(4, 45, 12))

    def test_parse_hhmm_rejects_out_of_range(self) -> None:
        with self.assertRaises(ValueError):
            parse_hhmm("24:10")
        with self.assertRaises(ValueError):
            parse_hhmm("0530")

    def test_format_hhmm(self) -> None:
        self.assertEqual(format_hhmm(time(7, 5)), "07:05")

    def test_format_remaining(self) -> None:
        self.assertEqual(format_remaining(timedelta(hours=1, minutes=5)), "1h 05m")
        self.assertEqual(format_remaining(timedelta(minutes=4, seconds=30)), "4m 30s")
        self.assertEqual(format_remaining(timedelta(seconds=-3)), "0s")

    def test_sanitize_time(self) -> None:
        self.assertEqual(sanitize_time("05:12 (EET)"), "05:12")
        self.assertEqual(sanitize_time("05:12+03"), "05:12")
        self.assertEqual(sanitize_time("05:12-05"), "05:12")


if __name__ == "__main__":
    unittest.main()
