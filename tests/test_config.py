"""
Tests for environment configuration loading.
"""

import unittest

from farol_analyzer.config import AppConfig, load_config, parse_schedule_time


class TestLoadConfig(unittest.TestCase):
    def test_defaults(self):
        config = load_config(env={})
        self.assertIsInstance(config, AppConfig)
        self.assertEqual(config.registry.rate_limit_ms, 1000)
        self.assertEqual(config.registry.max_retries, 3)
        self.assertEqual(config.registry.page_size, 500)
        self.assertEqual(config.registry.municipality_code, "3550308")
        self.assertEqual(config.anomaly.min_contracts_for_stats, 5)
        self.assertEqual(config.anomaly.concentration_threshold, 0.30)
        self.assertEqual((config.auto_update.schedule_hour, config.auto_update.schedule_minute), (3, 0))
        self.assertEqual(config.auto_update.lookback_days, 2)
        self.assertEqual(config.ai.provider, "openai")
        self.assertIsNone(config.ai.api_key)

    def test_overrides(self):
        env = {
            "FAROL_DB_PATH": "/tmp/farol.db",
            "FAROL_RATE_LIMIT_MS": "250",
            "FAROL_FETCH_AMENDMENTS": "yes",
            "FAROL_AI_PROVIDER": "Anthropic",
            "ANTHROPIC_API_KEY": '"sk-ant"',
            "FAROL_AI_FALLBACK": "false",
            "FAROL_SCHEDULE": "04:30",
            "FAROL_ALERT_WEBHOOK": "https://hooks.example.com/x",
            "FAROL_WORKERS": "8",
        }
        config = load_config(env=env)
        self.assertEqual(config.db_path, "/tmp/farol.db")
        self.assertEqual(config.registry.rate_limit_ms, 250)
        self.assertTrue(config.registry.fetch_amendments)
        self.assertEqual(config.ai.provider, "anthropic")
        self.assertEqual(config.ai.api_key, "sk-ant")
        self.assertFalse(config.classification.use_ai_fallback)
        self.assertEqual((config.auto_update.schedule_hour, config.auto_update.schedule_minute), (4, 30))
        self.assertEqual(config.auto_update.alert_webhook_url, "https://hooks.example.com/x")
        self.assertEqual(config.anomaly.workers, 8)

    def test_invalid_values(self):
        invalid = [
            {"FAROL_RATE_LIMIT_MS": "fast"},
            {"FAROL_PAGE_SIZE": "0"},
            {"FAROL_AI_FALLBACK": "maybe"},
            {"FAROL_AI_PROVIDER": "cohere"},
            {"FAROL_CONCENTRATION_THRESHOLD": "1.5"},
            {"FAROL_SCHEDULE": "25:00"},
            {"FAROL_MIN_POPULATION": "1"},
        ]
        for env in invalid:
            with self.assertRaises(ValueError, msg=str(env)):
                load_config(env=env)


class TestScheduleTime(unittest.TestCase):
    def test_parse(self):
        self.assertEqual(parse_schedule_time("03:00"), (3, 0))
        self.assertEqual(parse_schedule_time(" 7:05 "), (7, 5))

    def test_invalid(self):
        for value in ("3", "03:60", "24:00", "ab:cd"):
            with self.assertRaises(ValueError):
                parse_schedule_time(value)


if __name__ == "__main__":
    unittest.main()
