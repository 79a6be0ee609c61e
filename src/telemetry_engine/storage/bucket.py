"""Directory-backed object storage for generated reports."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional


class ReportBucket:
    """Stores JSON documents under slash-separated keys inside a root directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def put(self, key: str, document: Dict[str, Any]) -> Path:
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(document, indent=2, default=str))
        return path

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._resolve(key)
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def head(self, key: str) -> bool:
        return self._resolve(key).exists()

    def ping(self) -> bool:
        if not self._root.is_dir():
            raise FileNotFoundError(f"Report bucket root missing: {self._root}")
        return True

    def _resolve(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise ValueError(f"Invalid report key: {key}")
        return path
