import os
import unittest
from unittest.mock import patch

from pydantic import ValidationError

from app.config.settings import Settings


class TestSettings(unittest.TestCase):
    def test_defaults_without_env(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.DOOR_CODE_LENGTH, 4)
        self.assertEqual(settings.ACCESS_LEAD_MINUTES, 15)
        self.assertEqual(settings.ACCESS_TRAIL_MINUTES, 30)
        self.assertEqual(settings.LOOKAHEAD_MINUTES, 5)
        self.assertEqual(settings.POLL_INTERVAL_SEC, 60)
        self.assertEqual(settings.RELOCK_BUFFER_MINUTES, 5)
        self.assertEqual(settings.WEAK_CODE_BLACKLIST, [])
        self.assertIsNone(settings.BOOKING_API_BASE_URL)
        self.assertEqual(settings.LOG_LEVEL, "INFO")

    def test_valid_env_loads_settings(self):
        env = {
            "DOOR_CODE_LENGTH": "6",
            "ACCESS_LEAD_MINUTES": "10",
            "BOOKING_API_BASE_URL": "https://booking.example.test",
            "BOOKING_API_KEY": "secret",
            "ADMIN_CONTACT": "admin@example.com",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.DOOR_CODE_LENGTH, 6)
        self.assertEqual(settings.ACCESS_LEAD_MINUTES, 10.0)
        self.assertEqual(settings.BOOKING_API_BASE_URL, "https://booking.example.test")
        self.assertEqual(settings.ADMIN_CONTACT, "admin@example.com")
        self.assertEqual(settings.LOG_LEVEL, "DEBUG")

    def test_blacklist_parses_comma_separated_values(self):
        with patch.dict(os.environ, {"WEAK_CODE_BLACKLIST": " 1004, 2580 ,0852 "}, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.WEAK_CODE_BLACKLIST, ["1004", "2580", "0852"])

    def test_non_digit_blacklist_entry_fails_validation(self):
        with patch.dict(os.environ, {"WEAK_CODE_BLACKLIST": "1004,abcd"}, clear=True):
            with self.assertRaises(ValidationError):
                Settings.from_env()

    def test_out_of_range_code_length_fails_validation(self):
        with patch.dict(os.environ, {"DOOR_CODE_LENGTH": "2"}, clear=True):
            with self.assertRaises(ValidationError):
                Settings.from_env()

    def test_empty_values_fall_back_to_defaults(self):
        with patch.dict(os.environ, {"POLL_INTERVAL_SEC": "", "ADMIN_CONTACT": ""}, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.POLL_INTERVAL_SEC, 60)
        self.assertIsNone(settings.ADMIN_CONTACT)


if __name__ == "__main__":
    unittest.main()
