"""
Results upload agent.

Runs on the timing PC, watches the export directory and sends every new or
changed ``.racecheck`` file to the results API together with its SHA-256.
The API ignores a hash it already stored, so sending the same file twice
after a crash or restart does no harm.

    qtimer-agent            # poll forever
    qtimer-agent --once     # one scan, then exit
"""
from __future__ import annotations

import argparse
import hashlib
import logging
import os
import shutil
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, Field

from .logging_config import configure_logging
from .schemas import UploadResult
from .settings import AgentSettings

logger = logging.getLogger(__name__)

# ---------------------------
# Persisted file state
# ---------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class FileStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class FileState(BaseModel):
    hash: str
    status: FileStatus = FileStatus.PENDING
    retry_count: int = 0
    error: str = ""
    last_update: datetime = Field(default_factory=_utcnow)
    event_id: Optional[int] = None
    records: Optional[int] = None

class AgentState(BaseModel):
    files: dict[str, FileState] = Field(default_factory=dict)

    @classmethod
    def load(cls, path: Path) -> "AgentState":
        if not path.exists():
            return cls()
        state = cls.model_validate_json(path.read_text(encoding="utf-8"))
        # a file interrupted mid-send goes back in the queue
        for entry in state.files.values():
            if entry.status == FileStatus.PROCESSING:
                entry.status = FileStatus.PENDING
        return state

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def by_status(self, status: FileStatus) -> list[str]:
        return [key for key, entry in self.files.items() if entry.status == status]

# ---------------------------
# Directory scan
# ---------------------------

def file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(64 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()

def scan_directory(directory: Path, state: AgentState, extension: str) -> list[str]:
    """Queue new or modified results files and return every queued path."""
    for path in sorted(directory.iterdir()):
        if not path.is_file() or path.suffix.lower() != extension.lower():
            continue
        key = str(path)
        try:
            digest = file_sha256(path)
        except OSError:
            logger.exception("cannot hash results file", extra={"file": key})
            continue

        known = state.files.get(key)
        if known is not None and known.hash == digest:
            continue
        logger.info("new results file" if known is None else "results file modified", extra={"file": key})
        state.files[key] = FileState(hash=digest)
    return state.by_status(FileStatus.PENDING)

# ---------------------------
# API client
# ---------------------------

class UploadRejected(Exception):
    """The API refused the file. Sending the same bytes again would fail again."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message

def _error_message(response: httpx.Response) -> str:
    try:
        return str(response.json().get("error") or response.text)
    except ValueError:
        return response.text

class ResultsClient:
    def __init__(self, http: httpx.Client, password: str):
        self.http = http
        self.password = password
        self._token: Optional[str] = None

    def login(self) -> None:
        r = self.http.post("/auth/login", json={"password": self.password})
        if r.status_code == 401:
            raise UploadRejected(r.status_code, _error_message(r))
        r.raise_for_status()
        self._token = r.json()["token"]

    def upload(self, filename: str, content: bytes, file_hash: str, event_id: int = 0) -> UploadResult:
        if self._token is None:
            self.login()
        r = self._post(filename, content, file_hash, event_id)
        if r.status_code == 401:
            # token expired since login
            self.login()
            r = self._post(filename, content, file_hash, event_id)
        if 400 <= r.status_code < 500:
            raise UploadRejected(r.status_code, _error_message(r))
        r.raise_for_status()
        return UploadResult.model_validate(r.json())

    def _post(self, filename: str, content: bytes, file_hash: str, event_id: int) -> httpx.Response:
        url = f"/events/{event_id}/upload" if event_id else "/events/upload"
        return self.http.post(
            url,
            files={"file": (filename, content, "application/octet-stream")},
            data={"hash": file_hash},
            headers={"Authorization": f"Bearer {self._token}"},
        )

# ---------------------------
# Agent loop
# ---------------------------

class Agent:
    def __init__(self, config: AgentSettings, client: ResultsClient, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.client = client
        self.sleep = sleep
        self.state_path = Path(config.QTIMER_AGENT_STATE_FILE)
        self.state = AgentState.load(self.state_path)

    def run_once(self) -> int:
        """Scan, send what is pending and persist the state. Returns files sent."""
        directory = Path(self.config.QTIMER_AGENT_WATCH_DIR)
        try:
            pending = scan_directory(directory, self.state, self.config.QTIMER_RACECHECK_EXTENSION)
        except OSError:
            logger.exception("cannot scan results directory", extra={"directory": str(directory)})
            return 0

        sent = 0
        if pending:
            logger.info("sending pending files", extra={"count": len(pending)})
        for key in pending:
            if self._process(key):
                sent += 1
        self.state.save(self.state_path)
        return sent

    def run_forever(self) -> None:
        logger.info(
            "agent started",
            extra={"directory": self.config.QTIMER_AGENT_WATCH_DIR, "api": self.config.QTIMER_AGENT_API_URL},
        )
        try:
            while True:
                self.run_once()
                self.sleep(self.config.QTIMER_AGENT_CHECK_INTERVAL)
        except KeyboardInterrupt:
            logger.info("agent stopping")
        finally:
            self.state.save(self.state_path)

    def _process(self, key: str) -> bool:
        path = Path(key)
        entry = self.state.files[key]
        if not path.exists():
            logger.warning("queued file disappeared", extra={"file": key})
            del self.state.files[key]
            return False

        self._mark(entry, FileStatus.PROCESSING)
        attempts = max(1, self.config.QTIMER_AGENT_MAX_RETRIES)
        error = ""
        for attempt in range(1, attempts + 1):
            try:
                content = path.read_bytes()
                # hash what is actually sent, the export may have been rewritten since the scan
                digest = hashlib.sha256(content).hexdigest()
                result = self.client.upload(path.name, content, digest, self.config.QTIMER_AGENT_EVENT_ID)
            except UploadRejected as exc:
                error = str(exc)
                logger.error("results file rejected", extra={"file": key, "status": exc.status_code, "error": exc.message})
                break
            except (httpx.HTTPError, OSError) as exc:
                error = str(exc) or exc.__class__.__name__
                entry.retry_count += 1
                logger.warning("upload attempt failed", extra={"file": key, "attempt": attempt, "error": error})
                if attempt < attempts:
                    self.sleep(self.config.QTIMER_AGENT_RETRY_DELAY)
                continue

            entry.hash = digest
            entry.event_id = result.EventID
            entry.records = result.RecordsInserted
            entry.error = ""
            self._mark(entry, FileStatus.COMPLETED)
            logger.info(
                "results file sent",
                extra={
                    "file": key,
                    "event_id": result.EventID,
                    "records_inserted": result.RecordsInserted,
                    "reprocessed": result.Reprocessed,
                },
            )
            self._move(path, self.config.QTIMER_AGENT_COMPLETED_DIR)
            return True

        entry.error = error
        self._mark(entry, FileStatus.FAILED)
        self._move(path, self.config.QTIMER_AGENT_ERROR_DIR)
        return False

    def _mark(self, entry: FileState, status: FileStatus) -> None:
        entry.status = status
        entry.last_update = _utcnow()

    def _move(self, path: Path, directory: str) -> None:
        if not directory:
            return
        target = Path(directory)
        try:
            target.mkdir(parents=True, exist_ok=True)
            shutil.move(str(path), str(target / path.name))
        except OSError:
            logger.exception("cannot move results file", extra={"file": str(path), "directory": directory})

def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Send .racecheck exports to the results API.")
    ap.add_argument("--once", action="store_true", help="Scan and send once, then exit")
    ap.add_argument("--event-id", type=int, default=None, help="Replace the results of this event id")
    args = ap.parse_args(argv)

    config = AgentSettings()
    if args.event_id is not None:
        config.QTIMER_AGENT_EVENT_ID = args.event_id
    configure_logging(config.QTIMER_LOG_LEVEL, service="qtimer-agent")

    with httpx.Client(base_url=config.QTIMER_AGENT_API_URL, timeout=config.QTIMER_AGENT_HTTP_TIMEOUT) as http:
        agent = Agent(config, ResultsClient(http, config.QTIMER_AGENT_PASSWORD))
        if args.once:
            agent.run_once()
            return 1 if agent.state.by_status(FileStatus.FAILED) else 0
        agent.run_forever()
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
