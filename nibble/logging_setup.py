"""Structured logging for the Nibble service."""

from __future__ import annotations

import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger


class NibbleJSONFormatter(jsonlogger.JsonFormatter):
	def add_fields(
		self,
		log_record: dict[str, Any],
		record: logging.LogRecord,
		message_dict: dict[str, Any],
	) -> None:
		super().add_fields(log_record, record, message_dict)
		if "level" in log_record:
			log_record["level"] = str(log_record["level"]).upper()
		else:
			log_record["level"] = record.levelname


def setup_logging(level: str = "INFO") -> None:
	"""
	Configure the root logger to emit JSON lines on stdout.
	"""
	handler = logging.StreamHandler(sys.stdout)
	formatter = NibbleJSONFormatter(
		"%(asctime)s %(levelname)s %(name)s %(message)s",
		rename_fields={"asctime": "timestamp", "levelname": "level"},
	)
	handler.setFormatter(formatter)

	root_logger = logging.getLogger()
	root_logger.setLevel(level.upper())

	# Avoid duplicate handlers on reload
	for existing in root_logger.handlers[:]:
		root_logger.removeHandler(existing)

	root_logger.addHandler(handler)

	logging.getLogger("uvicorn.access").disabled = True
	logging.getLogger("httpx").setLevel("WARNING")
