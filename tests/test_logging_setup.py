from __future__ import annotations

import json
import logging
from unittest import TestCase

from nibble.logging_setup import NibbleJSONFormatter, setup_logging


class LoggingSetupTests(TestCase):
	def tearDown(self) -> None:
		root = logging.getLogger()
		for handler in root.handlers[:]:
			root.removeHandler(handler)
		logging.getLogger("uvicorn.access").disabled = False

	def test_formatter_renames_fields(self) -> None:
		formatter = NibbleJSONFormatter(
			"%(asctime)s %(levelname)s %(name)s %(message)s",
			rename_fields={"asctime": "timestamp", "levelname": "level"},
		)
		record = logging.LogRecord("nibble.test", logging.WARNING, __file__, 1, "Blocked %s", ("x",), None)
		record.ip = "10.0.0.1"
		payload = json.loads(formatter.format(record))
		self.assertEqual(payload["level"], "WARNING")
		self.assertEqual(payload["message"], "Blocked x")
		self.assertEqual(payload["ip"], "10.0.0.1")
		self.assertIn("timestamp", payload)

	def test_setup_replaces_handlers(self) -> None:
		setup_logging("debug")
		setup_logging("info")
		root = logging.getLogger()
		self.assertEqual(len(root.handlers), 1)
		self.assertIsInstance(root.handlers[0].formatter, NibbleJSONFormatter)
		self.assertEqual(root.level, logging.INFO)
		self.assertTrue(logging.getLogger("uvicorn.access").disabled)
