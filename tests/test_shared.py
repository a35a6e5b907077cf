from __future__ import annotations

import logging
import os
import unittest
from unittest import mock

from sheet_mapper.logging_config import setup_logging
from sheet_mapper.shared import DEFAULT_CONFIDENCE_THRESHOLD, DEFAULT_MAX_FORMULA_DEPTH, load_settings

ENV_KEYS = (
    "SHEET_MAPPER_CONFIDENCE_THRESHOLD",
    "SHEET_MAPPER_MAX_FORMULA_DEPTH",
    "SHEET_MAPPER_LOG_LEVEL",
    "SHEET_MAPPER_OUTPUT_STAMP",
)


def clean_env(**values: str) -> dict[str, str]:
    env = {key: value for key, value in os.environ.items() if key not in ENV_KEYS}
    env.update(values)
    return env


class SettingsTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, clean_env(), clear=True):
            settings = load_settings()
        self.assertEqual(settings.confidence_threshold, DEFAULT_CONFIDENCE_THRESHOLD)
        self.assertEqual(settings.max_formula_depth, DEFAULT_MAX_FORMULA_DEPTH)
        self.assertEqual(settings.log_level, "INFO")
        self.assertIsNone(settings.output_stamp)

    def test_environment_overrides(self):
        env = clean_env(
            SHEET_MAPPER_CONFIDENCE_THRESHOLD="45.5",
            SHEET_MAPPER_MAX_FORMULA_DEPTH="8",
            SHEET_MAPPER_LOG_LEVEL="debug",
            SHEET_MAPPER_OUTPUT_STAMP="20260101T000000Z",
        )
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings()
        self.assertEqual(settings.confidence_threshold, 45.5)
        self.assertEqual(settings.max_formula_depth, 8)
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.output_stamp, "20260101T000000Z")

    def test_invalid_values_fall_back(self):
        env = clean_env(SHEET_MAPPER_CONFIDENCE_THRESHOLD="veel", SHEET_MAPPER_MAX_FORMULA_DEPTH="-2")
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings()
        self.assertEqual(settings.confidence_threshold, DEFAULT_CONFIDENCE_THRESHOLD)
        self.assertEqual(settings.max_formula_depth, DEFAULT_MAX_FORMULA_DEPTH)


class LoggingConfigTests(unittest.TestCase):
    def tearDown(self):
        logger = logging.getLogger("sheet_mapper")
        logger.handlers.clear()
        logger.setLevel(logging.NOTSET)

    def test_setup_logging_sets_level_and_single_handler(self):
        logger = setup_logging("warning")
        setup_logging("warning")
        self.assertEqual(logger.name, "sheet_mapper")
        self.assertEqual(logger.level, logging.WARNING)
        self.assertEqual(len(logger.handlers), 1)

    def test_unknown_level_defaults_to_info(self):
        self.assertEqual(setup_logging("chatty").level, logging.INFO)


if __name__ == "__main__":
    unittest.main()
