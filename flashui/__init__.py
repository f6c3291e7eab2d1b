"""flashui: streaming UI component generation service.

Importing the package applies ``FLASHUI_ENV_FILE`` (default ``.env``) to the
process environment before any settings are read at module import.
"""
import os
from pathlib import Path
from typing import Dict, Optional, Tuple


def _parse_env_line(line: str) -> Optional[Tuple[str, str]]:
	s = line.strip()
	if not s or s.startswith("#"):
		return None
	if s.startswith("export "):
		s = s[len("export "):].lstrip()
	key, sep, val = s.partition("=")
	key = key.strip()
	if not sep or not key or " " in key:
		return None
	val = val.strip()
	if len(val) >= 2 and val[0] == val[-1] and val[0] in "\"'":
		return key, val[1:-1]
	# unquoted values may carry a trailing comment
	if " #" in val:
		val = val.split(" #", 1)[0].rstrip()
	return key, val


def load_env_file(path: Optional[str] = None) -> Dict[str, str]:
	"""Apply KEY=value lines from ``path``; returns only the keys it set.

	Variables already present in the environment are left alone. A missing
	or unreadable file is not an error.
	"""
	env_path = Path(path or os.getenv("FLASHUI_ENV_FILE", ".env"))
	applied: Dict[str, str] = {}
	try:
		lines = env_path.read_text(encoding="utf-8").splitlines()
	except OSError:
		return applied
	for line in lines:
		parsed = _parse_env_line(line)
		if parsed is None:
			continue
		key, val = parsed
		if key not in os.environ:
			os.environ[key] = val
			applied[key] = val
	return applied


# Tests run offline; never pick up a developer's real key under pytest
if not os.getenv("PYTEST_CURRENT_TEST"):
	load_env_file()
