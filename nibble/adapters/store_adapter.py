from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import TypeAdapter, ValidationError

from nibble import constants
from nibble.errors import PersistenceError
from nibble.schemas import Installation


logger = logging.getLogger(__name__)

_INSTALLATIONS = TypeAdapter(List[Installation])


def _get_path(path: Optional[str]) -> Path:
	return Path(path or constants.DEFAULT_DATA_FILE)


def load_installations(path: Optional[str] = None) -> List[Installation]:
	"""Read the persisted installation array.

	A missing file is a fresh start. An unreadable or malformed file is logged
	and treated as empty so a corrupt write never keeps the process down.
	"""
	file_path = _get_path(path)
	try:
		raw = file_path.read_text(encoding="utf-8")
	except FileNotFoundError:
		logger.info("No installations file at %s, starting fresh", file_path)
		return []
	except (OSError, UnicodeDecodeError) as exc:
		logger.error("Unable to read installations file %s: %s", file_path, exc)
		return []

	try:
		installations = _INSTALLATIONS.validate_json(raw)
	except ValidationError as exc:
		logger.error(
			"Installations file %s is malformed, ignoring it",
			file_path,
			extra={"errors": exc.error_count()},
		)
		return []
	logger.info("Loaded %d installations from %s", len(installations), file_path)
	return installations


def save_installations(installations: List[Installation], path: Optional[str] = None) -> None:
	file_path = _get_path(path)
	records: List[Dict[str, Any]] = [inst.to_record() for inst in installations]
	try:
		file_path.parent.mkdir(parents=True, exist_ok=True)
		fd, tmp_name = tempfile.mkstemp(prefix=".installations-", suffix=".json", dir=file_path.parent)
		try:
			with os.fdopen(fd, "w", encoding="utf-8") as handle:
				json.dump(records, handle, indent=2)
			os.replace(tmp_name, file_path)
		except BaseException:
			Path(tmp_name).unlink(missing_ok=True)
			raise
	except OSError as exc:
		raise PersistenceError(f"Unable to write installations file {file_path}: {exc}") from exc
	logger.debug("Saved %d installations to %s", len(records), file_path)
