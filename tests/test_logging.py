"""
Tests for the logging configuration helpers.
"""

import logging
import logging.handlers
import tempfile
import unittest
from unittest.mock import patch

from portsync.logging import (
    apply_component_levels,
    configure_logging,
    get_logger,
    log_error,
    log_performance,
    set_component_log_level,
    set_debug_mode,
    should_rate_limit_log,
    should_sample_log,
)
from portsync.logging.config import (
    get_component_log_levels,
    reset_component_log_levels,
    reset_rate_limit_state,
    reset_sampling_state,
)


class TestLogSampling(unittest.TestCase):
    def setUp(self):
        reset_sampling_state()
        reset_rate_limit_state()

    def test_sample_every_nth(self):
        emitted = [should_sample_log("ticks", sample_rate=3) for _ in range(7)]

        self.assertEqual(emitted, [True, False, False, True, False, False, True])

    def test_rate_limit_window(self):
        with patch("portsync.logging.config.time.time", side_effect=[100.0, 130.0, 161.0]):
            self.assertTrue(should_rate_limit_log("quota", limit_seconds=60))
            self.assertFalse(should_rate_limit_log("quota", limit_seconds=60))
            self.assertTrue(should_rate_limit_log("quota", limit_seconds=60))


class TestComponentLevels(unittest.TestCase):
    def setUp(self):
        set_debug_mode(False)
        reset_component_log_levels()

    def tearDown(self):
        set_debug_mode(False)
        reset_component_log_levels()

    def test_component_level_applies_to_loggers(self):
        set_component_log_level("ib.throttle", logging.WARNING)

        self.assertEqual(get_logger("portsync.ib.throttle").level, logging.WARNING)
        self.assertEqual(get_component_log_levels()["ib.throttle"], logging.WARNING)

    def test_components_match_package_relative_names(self):
        set_component_log_level("ib.requests", "ERROR")

        self.assertEqual(get_logger("portsync.ib.requests.child").level, logging.ERROR)
        # Neither a sibling sharing the prefix nor a foreign package is touched
        self.assertEqual(get_logger("portsync.ib.requests_extra").level, logging.NOTSET)
        self.assertEqual(get_logger("other.ib.requests").level, logging.NOTSET)

    def test_storage_components_default_to_warning(self):
        self.assertEqual(get_logger("portsync.persistence.database").level, logging.WARNING)
        self.assertEqual(get_logger("portsync.enrichment.reference_data").level, logging.WARNING)

    def test_debug_mode_opens_components(self):
        logger = get_logger("portsync.ib.subscription")

        set_debug_mode(True)
        self.assertEqual(logger.level, logging.DEBUG)

        set_debug_mode(False)
        self.assertEqual(logger.level, logging.INFO)

    def test_overrides_from_settings(self):
        apply_component_levels({"sync.scheduler": "debug", "ib.connection": logging.ERROR})

        self.assertEqual(get_logger("portsync.sync.scheduler").level, logging.DEBUG)
        self.assertEqual(get_logger("portsync.ib.connection").level, logging.ERROR)

    def test_unknown_level_name_rejected(self):
        with self.assertRaises(ValueError):
            set_component_log_level("ib.requests", "LOUD")


class TestConfigureLogging(unittest.TestCase):
    def test_file_handler_created(self):
        root = logging.getLogger()
        saved_handlers = root.handlers[:]
        saved_level = root.level
        try:
            with tempfile.TemporaryDirectory() as log_dir:
                configure_logging(log_dir=log_dir, console_level=logging.WARNING)
                handlers = root.handlers[:]

                self.assertTrue(any(isinstance(h, logging.handlers.RotatingFileHandler) for h in handlers))
                for handler in handlers:
                    handler.close()
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


class TestHelpers(unittest.TestCase):
    def test_log_error_includes_type_and_context(self):
        logger = get_logger("portsync.test")

        with self.assertLogs(logger, level="WARNING") as captured:
            log_error(logger, "Sub-write failed", RuntimeError("locked"), level=logging.WARNING, sub_operation="cash")

        self.assertIn("RuntimeError: locked (sub_operation=cash)", captured.output[0])

    def test_log_performance_wraps_sync_function(self):
        logger = get_logger("portsync.test.perf")

        @log_performance(logger=logger, log_level=logging.INFO)
        def add(a, b):
            return a + b

        with self.assertLogs(logger, level="INFO") as captured:
            self.assertEqual(add(2, 3), 5)

        self.assertIn("took", captured.output[0])


if __name__ == "__main__":
    unittest.main()
