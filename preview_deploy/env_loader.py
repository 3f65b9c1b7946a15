from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger("preview-deploy.env")


def load_local_env(env_path: Path | str = Path(".env"), *, override: bool = False) -> None:
    """Load key=value pairs from a local .env file without extra dependencies.

    Variables already present in the environment win unless *override* is set,
    so CI-provided values are never shadowed by a stale local file.
    """
    path = Path(env_path)
    if not path.exists():
        return

    for raw_line in path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        if "=" not in line:
            logger.warning("Skipping malformed .env line: %s", raw_line)
            continue

        key, value = line.split("=", 1)
        clean_key = key.strip()
        clean_value = value.strip().strip('"').strip("'")
        if not override and clean_key in os.environ:
            continue
        os.environ[clean_key] = clean_value


def load_event_payload(event_path: Optional[str]) -> Dict[str, Any]:
    """Read the pull-request event JSON, returning {} when unavailable."""
    if not event_path:
        return {}
    path = Path(event_path)
    if not path.exists():
        logger.warning("Event payload %s does not exist; ignoring it.", path)
        return {}
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        logger.warning("Event payload %s is not valid JSON (%s); ignoring it.", path, exc)
        return {}
    return payload if isinstance(payload, dict) else {}


def pull_request_number(payload: Dict[str, Any]) -> Optional[int]:
    pull_request = payload.get("pull_request")
    candidates = [
        pull_request.get("number") if isinstance(pull_request, dict) else None,
        payload.get("number"),
    ]
    for candidate in candidates:
        if isinstance(candidate, int) and candidate > 0:
            return candidate
    return None


def event_action(payload: Dict[str, Any]) -> Optional[str]:
    action = payload.get("action")
    return action if isinstance(action, str) else None
