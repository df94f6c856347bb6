"""
FileMessageStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    messages.json        {message_id: message}

Features:
  - Survives process restarts (unlike InMemoryMessageStore)
  - No external dependencies (no database server)
  - Flushes on every mutation (write to temp file, then rename)
  - Single-process only (no concurrent write safety)

An unreadable messages.json is moved aside to messages.json.corrupt-<time>
and records that fail validation are written to messages.json.rejected-<time>,
so nothing is overwritten by the next flush.

On load, messages left in `processing` by a previous process are resolved
to `failed_worker_error`: the attempt's outcome is unknown and there is no
automatic retry.

Best for: small deployments, demos, a single always-on machine.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path

from database.store_memory import InMemoryMessageStore
from models.schemas import MessageStatus, ScheduledMessage, utcnow

logger = structlog.get_logger()

_MESSAGES_FILE = "messages.json"


class FileMessageStore(InMemoryMessageStore):
    """
    Extends InMemoryMessageStore with JSON file persistence.

    On init: loads all messages from disk into memory.
    On every write: flushes the collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load()
        logger.info("file_store_initialized", data_dir=str(self._data_dir),
                    messages=len(self._messages))

    @property
    def path(self) -> Path:
        return self._data_dir / _MESSAGES_FILE

    # ── Load / Save ───────────────────────────────────────

    def _load(self):
        if not self.path.exists():
            return
        with open(self.path, "r") as f:
            text = f.read()
        try:
            raw = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError as e:
            raw, error = None, str(e)
        else:
            error = None if isinstance(raw, dict) else f"expected an object, got {type(raw).__name__}"

        if error is not None:
            # keep the unreadable bytes before the next flush replaces the file
            backup = self._aside_path("corrupt")
            self.path.replace(backup)
            logger.error("file_store_load_error", path=str(self.path),
                         moved_to=str(backup), error=error)
            return

        rejected = {}
        interrupted = 0
        for message_id, data in raw.items():
            try:
                message = ScheduledMessage.model_validate(data)
            except ValueError as e:
                logger.error("file_store_bad_record", message_id=message_id, error=str(e))
                rejected[message_id] = data
                continue
            self._messages[message.id] = message
            if message.status == MessageStatus.PROCESSING:
                self._apply_status(message, MessageStatus.FAILED_WORKER_ERROR)
                interrupted += 1

        if rejected:
            backup = self._aside_path("rejected")
            with open(backup, "w") as f:
                json.dump(rejected, f, indent=2)
            logger.error("file_store_records_set_aside",
                         count=len(rejected), moved_to=str(backup))
        if interrupted:
            logger.warning("file_store_interrupted_deliveries", count=interrupted)
        if rejected or interrupted:
            self.flush()

    def _aside_path(self, reason: str) -> Path:
        stamp = utcnow().strftime("%Y%m%dT%H%M%S%f")
        return self.path.with_name(f"{_MESSAGES_FILE}.{reason}-{stamp}")

    def flush(self):
        """Write all messages to disk."""
        data = {mid: m.model_dump(mode="json") for mid, m in self._messages.items()}
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(self.path)  # atomic on POSIX

    def _on_change(self) -> None:
        self.flush()
