"""Opaque per-account key/value persistence (cookies live here)."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

PROFILE_SUFFIX = ".webpuppet.json"


class Profile:
    """
    JSON file keyed by section name.

    A profile without a name keeps its sections in memory and never touches
    disk. Relative names resolve to `<cwd>/<name>.webpuppet.json`.
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self.name = name
        self._data: Dict[str, Any] = {}
        if not name:
            self.file: Optional[Path] = None
        elif os.path.isabs(name):
            self.file = Path(name)
        else:
            self.file = Path.cwd() / f"{name}{PROFILE_SUFFIX}"
        logger.debug("Profile(%s) file=%s", name, self.file)

    def __repr__(self) -> str:
        return f"Profile({self.name!r})"

    def load(self) -> None:
        if not self.file or not self.file.exists():
            return
        try:
            data = json.loads(self.file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Profile.load(%s) unreadable, starting empty: %s", self.file, e)
            data = {}
        if not isinstance(data, dict):
            logger.error("Profile.load(%s) not a JSON object, starting empty", self.file)
            data = {}
        self._data = data

    def save(self) -> None:
        if not self.file:
            return
        tmp = self.file.with_suffix(self.file.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(self._data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, self.file)
        except OSError as e:
            logger.error("Profile.save(%s) failed: %s", self.file, e)
            tmp.unlink(missing_ok=True)
            raise

    def get(self, section: str) -> Any:
        return self._data.get(section)

    def set(self, section: str, value: Any) -> None:
        self._data[section] = value

    def destroy(self) -> None:
        logger.debug("Profile.destroy() file=%s", self.file)
        self._data = {}
        if self.file and self.file.exists():
            self.file.unlink()


__all__ = ["Profile", "PROFILE_SUFFIX"]
