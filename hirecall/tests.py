"""
hirecall/tests.py

Shared helpers: text parsing and local-time / calling-hours arithmetic.
"""

from datetime import datetime, timezone as dt_timezone

from django.test import SimpleTestCase, override_settings

from hirecall.text_utils import name_from_email, split_skills, strip_json_fence
from hirecall.time_utils import at_local_hour, is_within_calling_hours, next_window_start, roll_into_window


def _utc(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=dt_timezone.utc)


class TextUtilsTests(SimpleTestCase):
    def test_strip_json_fence(self):
        self.assertEqual(strip_json_fence('```json\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(strip_json_fence('  {"a": 1} '), '{"a": 1}')
        self.assertEqual(strip_json_fence(None), "")

    def test_name_from_email(self):
        self.assertEqual(name_from_email("x@example.com", "Priya Shah"), "Priya Shah")
        self.assertEqual(name_from_email("jane.doe42@example.com", None), "Jane Doe")
        self.assertEqual(name_from_email("jane_doe@example.com", "Not available"), "Jane Doe")
        self.assertEqual(name_from_email(None, ""), "Not available")

    def test_split_skills(self):
        self.assertEqual(split_skills("Python, Django;  AWS\nSQL | Go"), ["python", "django", "aws", "sql", "go"])
        self.assertEqual(split_skills(["React", " "]), ["react"])
        self.assertEqual(split_skills(None), [])


@override_settings(APSCHEDULER_TIMEZONE="Asia/Kolkata", CALLING_START_HOUR=9, CALLING_END_HOUR=18)
class TimeUtilsTests(SimpleTestCase):
    def test_calling_hours_use_local_time(self):
        # 03:30 UTC is 09:00 IST; 12:30 UTC is 18:00 IST.
        self.assertTrue(is_within_calling_hours(_utc(2, 3, 30)))
        self.assertFalse(is_within_calling_hours(_utc(2, 3, 29)))
        self.assertFalse(is_within_calling_hours(_utc(2, 12, 30)))

    def test_at_local_hour(self):
        self.assertEqual(at_local_hour(_utc(2, 20), 10), _utc(3, 4, 30))
        self.assertEqual(at_local_hour(_utc(2, 4), 16, days=1), _utc(3, 10, 30))

    def test_next_window_start(self):
        self.assertEqual(next_window_start(_utc(2, 1)), _utc(2, 3, 30))
        self.assertEqual(next_window_start(_utc(2, 13)), _utc(3, 3, 30))

    def test_roll_into_window(self):
        inside = _utc(2, 6)
        self.assertEqual(roll_into_window(inside), inside)
        self.assertEqual(roll_into_window(_utc(2, 14)), _utc(3, 3, 30))
