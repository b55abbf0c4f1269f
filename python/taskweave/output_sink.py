"""Output sinks for execution envelopes.

JsonFileOutputSink writes each envelope to
``<output_dir>/<task_id>_<timestamp>.json``, where a downstream converter
picks it up. File writes run in a worker thread so the event loop never
blocks on disk I/O.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Union

logger = logging.getLogger(__name__)


class JsonFileOutputSink:
    """Persists envelopes as pretty-printed JSON files."""

    def __init__(self, output_dir: Union[str, Path]) -> None:
        self.output_dir = Path(output_dir)

    async def write(self, envelope: Dict[str, Any]) -> None:
        path = await asyncio.to_thread(self._write_file, envelope)
        logger.debug("Saved output for %s to %s", envelope.get("task_id"), path)

    def _write_file(self, envelope: Dict[str, Any]) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        path = self.output_dir / f"{envelope.get('task_id', 'task')}_{stamp}.json"
        with path.open("w", encoding="utf-8") as f:
            json.dump(envelope, f, indent=2, default=str)
        return path


class MemoryOutputSink:
    """Keeps envelopes in a list. Used by tests and dry runs."""

    def __init__(self) -> None:
        self.envelopes: List[Dict[str, Any]] = []

    async def write(self, envelope: Dict[str, Any]) -> None:
        self.envelopes.append(envelope)
