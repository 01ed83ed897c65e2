"""Run checkpoints: durable progress records that make runs resumable.

Two backends with the same contract (load / save / finalize):
  - FileCheckpointStore: one JSON file per run, temp-file + fsync + os.replace,
    so a reader never sees a half-written checkpoint.
  - SqlCheckpointStore: one row per run in General.ops.ReconcileCheckpoint,
    replaced by a single MERGE statement.

CheckpointWriter moves saves off the coordinator's dispatch loop. It coalesces
snapshots (only the newest pending one is written) and flush() blocks until the
latest submitted snapshot is durable.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path

import config
from reconcile.errors import CheckpointIOError
from reconcile.models import RunCheckpoint, utc_now_iso

logger = logging.getLogger(__name__)

_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,199}$")


def validate_run_id(run_id: str) -> str:
    """Run ids become file names and primary keys — restrict the alphabet."""
    if not run_id or not _RUN_ID_PATTERN.match(run_id):
        raise ValueError(
            f"Invalid run id {run_id!r}: use letters, digits, '.', '_' or '-' "
            "(max 200 chars, must not start with punctuation)"
        )
    return run_id


def _serialize(checkpoint: RunCheckpoint) -> str:
    return json.dumps(checkpoint.to_dict(), sort_keys=True, separators=(",", ":"))


def _digest(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _decode(data, source: str) -> RunCheckpoint:
    """Build a RunCheckpoint from parsed JSON, mapping malformed payloads to CheckpointIOError."""
    try:
        return RunCheckpoint.from_dict(data)
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise CheckpointIOError(f"Malformed checkpoint {source}: {type(e).__name__}: {e}") from e


class FileCheckpointStore:
    """JSON checkpoint files under a directory (default config.CHECKPOINT_DIR)."""

    def __init__(self, directory: str | Path | None = None) -> None:
        self._dir = Path(directory) if directory is not None else config.CHECKPOINT_DIR
        # run_id -> sha256 of the payload this store last wrote or read
        self._digests: dict[str, str] = {}

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, run_id: str) -> Path:
        return self._dir / f"{validate_run_id(run_id)}.json"

    def load(self, run_id: str) -> RunCheckpoint | None:
        path = self.path_for(run_id)
        try:
            if not path.exists():
                return None
            text = path.read_text(encoding="utf-8")
            data = json.loads(text)
        except (OSError, ValueError) as e:
            raise CheckpointIOError(f"Cannot read checkpoint {path}: {e}") from e
        checkpoint = _decode(data, str(path))
        self._digests[run_id] = _digest(text)
        return checkpoint

    def save(self, checkpoint: RunCheckpoint) -> bool:
        """Atomically replace the run's checkpoint file.

        Returns False when the stored content is already identical (no write).
        """
        path = self.path_for(checkpoint.run_id)
        payload = _serialize(checkpoint)
        digest = _digest(payload)
        tmp_path: str | None = None
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            known = self._digests.get(checkpoint.run_id)
            if known is None and path.exists():
                known = _digest(path.read_text(encoding="utf-8"))
            if known == digest:
                logger.debug("Checkpoint %s unchanged — skipping write", checkpoint.run_id)
                return False

            fd, tmp_path = tempfile.mkstemp(
                dir=self._dir, prefix=f".{checkpoint.run_id}.", suffix=".tmp",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
            self._digests[checkpoint.run_id] = digest
        except OSError as e:
            raise CheckpointIOError(f"Cannot write checkpoint {path}: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.warning("Could not remove temp checkpoint file %s", tmp_path)

        logger.debug(
            "Checkpoint saved: %s completed=%d failed=%d pending=%d",
            checkpoint.run_id, len(checkpoint.completed),
            len(checkpoint.failed), len(checkpoint.pending),
        )
        return True

    def finalize(self, run_id: str) -> RunCheckpoint:
        checkpoint = self.load(run_id)
        if checkpoint is None:
            raise CheckpointIOError(f"Cannot finalize missing checkpoint {run_id}")
        _mark_finalized(checkpoint)
        self.save(checkpoint)
        logger.info("Checkpoint finalized: %s", run_id)
        return checkpoint

    def list_runs(self) -> list[str]:
        if not self._dir.exists():
            return []
        return sorted(p.stem for p in self._dir.glob("*.json"))


class SqlCheckpointStore:
    """Checkpoint rows in General.ops.ReconcileCheckpoint (payload as JSON)."""

    _DDL = """
    IF NOT EXISTS (
        SELECT 1 FROM INFORMATION_SCHEMA.TABLES
        WHERE TABLE_SCHEMA = 'ops' AND TABLE_NAME = 'ReconcileCheckpoint'
    )
    CREATE TABLE ops.ReconcileCheckpoint (
        RunId       NVARCHAR(200)  NOT NULL PRIMARY KEY,
        Status      NVARCHAR(16)   NOT NULL,
        Payload     NVARCHAR(MAX)  NOT NULL,
        UpdatedAt   DATETIME2      NOT NULL DEFAULT GETUTCDATE(),
        FinalizedAt DATETIME2      NULL
    )
    """

    def __init__(self) -> None:
        self._table_ready = False

    def ensure_table(self) -> None:
        """Create ops.ReconcileCheckpoint if missing. Idempotent."""
        if self._table_ready:
            return
        import connections

        try:
            with connections.cursor_for(config.GENERAL_DB) as cur:
                cur.execute(self._DDL)
        except Exception as e:
            raise CheckpointIOError(f"Cannot ensure ops.ReconcileCheckpoint: {e}") from e
        self._table_ready = True

    def load(self, run_id: str) -> RunCheckpoint | None:
        import connections

        self.ensure_table()
        try:
            with connections.cursor_for(config.GENERAL_DB) as cur:
                cur.execute(
                    "SELECT Payload FROM ops.ReconcileCheckpoint WHERE RunId = ?",
                    validate_run_id(run_id),
                )
                row = cur.fetchone()
        except ValueError:
            raise
        except Exception as e:
            raise CheckpointIOError(f"Cannot read checkpoint {run_id}: {e}") from e
        if row is None:
            return None
        try:
            data = json.loads(row[0])
        except ValueError as e:
            raise CheckpointIOError(f"Corrupt checkpoint payload for {run_id}: {e}") from e
        return _decode(data, run_id)

    def save(self, checkpoint: RunCheckpoint) -> bool:
        import connections

        self.ensure_table()
        payload = _serialize(checkpoint)
        try:
            with connections.cursor_for(config.GENERAL_DB) as cur:
                # Payload comparison keeps identical saves from touching the row.
                cur.execute(
                    """
                    MERGE INTO ops.ReconcileCheckpoint AS target
                    USING (SELECT ? AS RunId, ? AS Status, ? AS Payload, ? AS FinalizedAt) AS source
                    ON target.RunId = source.RunId
                    WHEN MATCHED AND target.Payload <> source.Payload THEN
                        UPDATE SET Status = source.Status, Payload = source.Payload,
                                   FinalizedAt = source.FinalizedAt, UpdatedAt = GETUTCDATE()
                    WHEN NOT MATCHED THEN
                        INSERT (RunId, Status, Payload, FinalizedAt, UpdatedAt)
                        VALUES (source.RunId, source.Status, source.Payload,
                                source.FinalizedAt, GETUTCDATE());
                    """,
                    validate_run_id(checkpoint.run_id), checkpoint.status,
                    payload, checkpoint.finalized_at,
                )
                changed = cur.rowcount != 0
        except ValueError:
            raise
        except Exception as e:
            raise CheckpointIOError(f"Cannot write checkpoint {checkpoint.run_id}: {e}") from e
        return changed

    def finalize(self, run_id: str) -> RunCheckpoint:
        checkpoint = self.load(run_id)
        if checkpoint is None:
            raise CheckpointIOError(f"Cannot finalize missing checkpoint {run_id}")
        _mark_finalized(checkpoint)
        self.save(checkpoint)
        logger.info("Checkpoint finalized: %s", run_id)
        return checkpoint


def _mark_finalized(checkpoint: RunCheckpoint) -> None:
    now = utc_now_iso()
    checkpoint.status = "completed"
    checkpoint.finalized_at = now
    checkpoint.updated_at = now


def get_checkpoint_store(backend: str | None = None, directory: str | Path | None = None):
    """Build the configured checkpoint store ("file" or "sql")."""
    backend = (backend or config.CHECKPOINT_BACKEND).lower()
    if backend == "file":
        return FileCheckpointStore(directory)
    if backend == "sql":
        return SqlCheckpointStore()
    raise ValueError(f"Unknown checkpoint backend: {backend}. Available: ['file', 'sql']")


class CheckpointWriter:
    """Background thread writing the newest submitted checkpoint snapshot.

    Snapshots must not be mutated after submit(). The first write failure is
    sticky: submit(), raise_if_failed() and flush() re-raise it as
    CheckpointIOError.
    """

    def __init__(self, store) -> None:
        self._store = store
        self._cond = threading.Condition()
        self._latest: RunCheckpoint | None = None
        self._submitted = 0
        self._written = 0
        self._error: CheckpointIOError | None = None
        self._closed = False
        self._thread = threading.Thread(
            target=self._run, name="checkpoint-writer", daemon=True,
        )
        self._thread.start()

    def submit(self, checkpoint: RunCheckpoint) -> None:
        with self._cond:
            if self._error is not None:
                raise self._error
            if self._closed:
                raise CheckpointIOError("Checkpoint writer is closed")
            self._latest = checkpoint
            self._submitted += 1
            self._cond.notify_all()

    def raise_if_failed(self) -> None:
        with self._cond:
            if self._error is not None:
                raise self._error

    def flush(self, timeout: float | None = None) -> None:
        """Block until every submitted snapshot is superseded by a durable write."""
        with self._cond:
            target = self._submitted
            done = self._cond.wait_for(
                lambda: self._written >= target or self._error is not None,
                timeout=timeout,
            )
            if self._error is not None:
                raise self._error
            if not done:
                raise CheckpointIOError(f"Checkpoint flush timed out after {timeout}s")

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self._thread.join()

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._latest is None and not self._closed:
                    self._cond.wait()
                if self._latest is None:
                    return
                checkpoint, seq = self._latest, self._submitted
                self._latest = None

            error: CheckpointIOError | None = None
            try:
                self._store.save(checkpoint)
            except CheckpointIOError as e:
                error = e
            except Exception as e:
                error = CheckpointIOError(f"Checkpoint write failed: {e}")
                error.__cause__ = e

            with self._cond:
                if error is not None:
                    logger.error("Checkpoint write failed for %s: %s", checkpoint.run_id, error)
                    if self._error is None:
                        self._error = error
                else:
                    self._written = max(self._written, seq)
                self._cond.notify_all()
