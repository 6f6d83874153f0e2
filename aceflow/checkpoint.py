"""
Checkpoint Manager - snapshot, validate and restore project state.

Store layout (one directory per checkpoint):

    <store>/<id>/files/<relative path>   archived payload
    <store>/<id>/manifest.json           relative path -> sha256
    <store>/<id>/metadata.json           id, trigger, component states, ...

A checkpoint is built in a hidden `.tmp-<id>` directory and renamed into
place, so it is never observable half written. Restore stages every file,
journals the swap and keeps backups; a journal left behind by an
interrupted restore is rolled back the next time the store is opened,
by readers and writers alike.
"""

from __future__ import annotations

import json
import os
import secrets
import shutil
import subprocess
import tarfile
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from .config import STATE_DIR_NAME, RecoveryConfig
from .errors import ChecksumMismatch, CheckpointNotFound, SnapshotIncomplete
from .models import (
    Checkpoint,
    CheckpointSummary,
    CheckpointTrigger,
    ChecksumManifest,
    PruneResult,
    RestoreResult,
    RetentionPolicy,
    ValidationResult,
)
from .utils.fs import atomic_write, fsync_directory, iter_files, sha256_file, to_relative_key
from .utils.locking import StoreLock
from .utils.logger import get_logger

logger = get_logger("checkpoint")

PAYLOAD_DIR = "files"
MANIFEST_FILE = "manifest.json"
METADATA_FILE = "metadata.json"
JOURNAL_FILE = ".restore-journal.json"
TMP_PREFIX = ".tmp-"
DELETING_PREFIX = ".deleting-"

DEFAULT_COMPONENT_STATE = "captured"


def new_checkpoint_id(now: datetime | None = None) -> str:
    """Time-sortable id, e.g. cp-20240101T120000123456Z-9f3a."""
    now = now or datetime.now(timezone.utc)
    return f"cp-{now.strftime('%Y%m%dT%H%M%S%fZ')}-{secrets.token_hex(2)}"


def _source_revision(project_root: Path) -> str | None:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=project_root,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _relative_to(path: Path, root: Path) -> str | None:
    try:
        return path.resolve().relative_to(root).as_posix()
    except ValueError:
        return None


class CheckpointManager:
    """Creates, validates, restores and prunes checkpoints of a project."""

    def __init__(
        self,
        project_root: Path,
        store_dir: Path,
        components: Mapping[str, Iterable[str]],
        exclude: Iterable[str] = (),
        staging_dir: Path | None = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.store_dir = Path(store_dir).resolve()
        self.components = {name: list(paths) for name, paths in components.items()}
        self.staging_dir = (
            Path(staging_dir).resolve() if staging_dir else self.project_root / STATE_DIR_NAME / ".staging"
        )
        self.lock = StoreLock(self.store_dir)

        # The store never snapshots itself or its own restore area.
        self.exclude = list(exclude)
        for internal in (self.store_dir, self.staging_dir):
            relative = _relative_to(internal, self.project_root)
            if relative and relative != "." and relative not in self.exclude:
                self.exclude.append(relative)

    @classmethod
    def from_config(cls, config: RecoveryConfig) -> "CheckpointManager":
        exclude = list(config.checkpoints.exclude)
        ledger = _relative_to(config.ledger_path, config.project_root)
        if ledger and ledger not in exclude:
            exclude.append(ledger)
        return cls(
            project_root=config.project_root,
            store_dir=config.checkpoints_dir,
            components=config.checkpoints.components,
            exclude=exclude,
            staging_dir=config.state_dir / ".staging",
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        trigger: CheckpointTrigger = CheckpointTrigger.MANUAL,
        component_states: Mapping[str, str] | None = None,
        description: str = "",
    ) -> Checkpoint:
        """Snapshot the declared components into a new sealed checkpoint.

        component_states maps component name -> status; None captures every
        configured component. Raises SnapshotIncomplete if any component
        cannot be captured; nothing is retained in that case.
        """
        if component_states is None:
            component_states = {name: DEFAULT_COMPONENT_STATE for name in self.components}
        if not component_states:
            raise SnapshotIncomplete("*", "no components declared")
        for name in component_states:
            if name not in self.components:
                raise SnapshotIncomplete(name, "component is not configured")

        self.recover()
        self.store_dir.mkdir(parents=True, exist_ok=True)
        with self.lock.writer("create"):
            self._recover()
            checkpoint_id = new_checkpoint_id()
            log = logger.bind(checkpoint=checkpoint_id)
            staging = self.store_dir / f"{TMP_PREFIX}{checkpoint_id}"
            start = time.monotonic()

            try:
                manifest, total_bytes = self._capture(component_states, staging / PAYLOAD_DIR)
                checkpoint = Checkpoint(
                    id=checkpoint_id,
                    created_at=datetime.now(timezone.utc),
                    trigger=CheckpointTrigger(trigger),
                    component_states=dict(component_states),
                    archive_ref=f"{checkpoint_id}/{PAYLOAD_DIR}",
                    manifest=manifest,
                    source_revision=_source_revision(self.project_root),
                    description=description,
                    total_bytes=total_bytes,
                )
                atomic_write(staging / MANIFEST_FILE, manifest.to_json())
                atomic_write(staging / METADATA_FILE, json.dumps(checkpoint.metadata(), indent=2))
                os.replace(staging, self.store_dir / checkpoint_id)
                fsync_directory(self.store_dir)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise

        log.info(
            f"Created {checkpoint.trigger.value} checkpoint: {len(manifest)} files, "
            f"{total_bytes} bytes in {time.monotonic() - start:.2f}s"
        )
        return checkpoint

    def _capture(self, component_states: Mapping[str, str], payload: Path) -> tuple[ChecksumManifest, int]:
        entries: dict[str, str] = {}
        total_bytes = 0
        payload.mkdir(parents=True)

        for name in component_states:
            for declared in self.components[name]:
                source = (self.project_root / declared).resolve()
                if not source.exists():
                    raise SnapshotIncomplete(name, "path does not exist", declared)
                try:
                    files = list(iter_files(self.project_root, source, self.exclude))
                    for path in files:
                        key = to_relative_key(path, self.project_root)
                        if key in entries:
                            continue
                        target = payload / key
                        target.parent.mkdir(parents=True, exist_ok=True)
                        shutil.copy2(path, target)
                        entries[key] = sha256_file(target)
                        total_bytes += target.stat().st_size
                except OSError as e:
                    raise SnapshotIncomplete(name, str(e), getattr(e, "filename", None) or declared) from e

        return ChecksumManifest(entries), total_bytes

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def _checkpoint_dir(self, checkpoint_id: str) -> Path:
        if not checkpoint_id or "/" in checkpoint_id or checkpoint_id.startswith("."):
            raise CheckpointNotFound(checkpoint_id)
        return self.store_dir / checkpoint_id

    def _load(self, checkpoint_id: str) -> Checkpoint:
        directory = self._checkpoint_dir(checkpoint_id)
        metadata_path = directory / METADATA_FILE
        if not metadata_path.is_file():
            raise CheckpointNotFound(checkpoint_id)
        try:
            metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ChecksumMismatch(checkpoint_id, [METADATA_FILE]) from e
        try:
            entries = json.loads((directory / MANIFEST_FILE).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ChecksumMismatch(checkpoint_id, [MANIFEST_FILE]) from e
        if not isinstance(entries, dict):
            raise ChecksumMismatch(checkpoint_id, [MANIFEST_FILE])
        try:
            return Checkpoint.from_metadata(metadata, ChecksumManifest(entries))
        except (KeyError, ValueError, TypeError) as e:
            raise ChecksumMismatch(checkpoint_id, [METADATA_FILE]) from e

    def get(self, checkpoint_id: str) -> Checkpoint:
        """Load a checkpoint. Raises CheckpointNotFound for unknown ids."""
        with self._reading("get"):
            return self._load(checkpoint_id)

    def _all(self) -> list[Checkpoint]:
        if not self.store_dir.is_dir():
            return []
        checkpoints = []
        for entry in self.store_dir.iterdir():
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            try:
                checkpoints.append(self._load(entry.name))
            except (CheckpointNotFound, ChecksumMismatch) as e:
                logger.warning(f"Skipping unreadable checkpoint {entry.name}: {e}")
        checkpoints.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return checkpoints

    def list(
        self,
        trigger: CheckpointTrigger | None = None,
        component: str | None = None,
        since: datetime | None = None,
    ) -> list[CheckpointSummary]:
        """Checkpoint summaries, newest first, optionally filtered."""
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        with self._reading("list"):
            checkpoints = self._all()
        summaries = []
        for checkpoint in checkpoints:
            if trigger is not None and checkpoint.trigger != CheckpointTrigger(trigger):
                continue
            if component is not None and component not in checkpoint.component_states:
                continue
            if since is not None and checkpoint.created_at < since:
                continue
            summaries.append(checkpoint.summary())
        return summaries

    def _validate(self, checkpoint: Checkpoint) -> ValidationResult:
        directory = self.store_dir / checkpoint.id
        payload = directory / PAYLOAD_DIR
        mismatches: list[str] = []

        metadata = json.loads((directory / METADATA_FILE).read_text(encoding="utf-8"))
        if metadata.get("manifest_digest") != checkpoint.manifest.digest():
            mismatches.append(MANIFEST_FILE)

        for key, expected in sorted(checkpoint.manifest.entries.items()):
            path = payload / key
            if not path.is_file():
                mismatches.append(key)
                continue
            try:
                actual = sha256_file(path)
            except OSError:
                mismatches.append(key)
                continue
            if actual != expected:
                mismatches.append(key)

        # Files smuggled into the payload are tampering too.
        if payload.is_dir():
            for path in iter_files(payload, payload, ()):
                key = to_relative_key(path, payload)
                if key not in checkpoint.manifest.entries:
                    mismatches.append(key)
        elif checkpoint.manifest.entries:
            mismatches.append(PAYLOAD_DIR)

        return ValidationResult(checkpoint.id, valid=not mismatches, mismatches=tuple(mismatches))

    def validate(self, checkpoint_id: str) -> ValidationResult:
        """Recompute every manifest hash. Never touches the live project."""
        with self._reading("validate"):
            try:
                checkpoint = self._load(checkpoint_id)
            except ChecksumMismatch as e:
                return ValidationResult(checkpoint_id, valid=False, mismatches=tuple(e.mismatches))
            result = self._validate(checkpoint)
        if result.valid:
            logger.info(f"Checkpoint {checkpoint_id} is valid ({len(checkpoint.manifest)} files)")
        else:
            logger.warning(f"Checkpoint {checkpoint_id} failed validation: {', '.join(result.mismatches)}")
        return result

    def validate_all(self) -> list[ValidationResult]:
        """Validate every checkpoint in the store, newest first."""
        results = []
        for summary in self.list():
            results.append(self.validate(summary.id))
        return results

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, checkpoint_id: str) -> RestoreResult:
        """Apply a checkpoint to the live project as one transaction.

        Validates first and raises ChecksumMismatch without writing anything
        if the checkpoint is corrupt. Files already matching the checkpoint
        are left alone, so restoring twice is a no-op the second time. Live
        files absent from the checkpoint are not deleted.
        """
        self.store_dir.mkdir(parents=True, exist_ok=True)
        with self.lock.exclusive("restore"):
            self._recover()
            log = logger.bind(checkpoint=checkpoint_id)
            start = time.monotonic()

            checkpoint = self._load(checkpoint_id)
            result = self._validate(checkpoint)
            if not result.valid:
                log.error(f"Refusing to restore corrupt checkpoint: {', '.join(result.mismatches)}")
                raise ChecksumMismatch(checkpoint_id, result.mismatches)

            changed = self._plan_restore(checkpoint)
            if changed:
                self._apply(checkpoint, changed)

            restore_result = RestoreResult(
                checkpoint_id=checkpoint_id,
                restored_components=tuple(checkpoint.component_states),
                files_restored=len(changed),
                duration_seconds=time.monotonic() - start,
            )
        log.info(
            f"Restored {len(changed)} file(s), {len(checkpoint.manifest) - len(changed)} already up to date"
        )
        return restore_result

    def _plan_restore(self, checkpoint: Checkpoint) -> list[str]:
        """Keys whose live copy differs from the checkpoint."""
        changed = []
        for key, expected in sorted(checkpoint.manifest.entries.items()):
            live = self.project_root / key
            if live.is_dir() and not live.is_symlink():
                raise IsADirectoryError(f"Cannot restore {key}: a directory is in the way")
            if live.is_file() and not live.is_symlink() and sha256_file(live) == expected:
                continue
            changed.append(key)
        return changed

    def _apply(self, checkpoint: Checkpoint, keys: list[str]) -> None:
        payload = self.store_dir / checkpoint.id / PAYLOAD_DIR
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f"restore-{checkpoint.id}-", dir=self.staging_dir))

        try:
            for key in keys:
                staged = staging / "new" / key
                staged.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(payload / key, staged)
                if sha256_file(staged) != checkpoint.manifest.entries[key]:
                    raise ChecksumMismatch(checkpoint.id, [key])

            journal = {
                "checkpoint_id": checkpoint.id,
                "staging": str(staging),
                "entries": [
                    {"path": key, "existed": os.path.lexists(self.project_root / key)} for key in keys
                ],
            }
            atomic_write(self.store_dir / JOURNAL_FILE, json.dumps(journal, indent=2))
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        try:
            for entry in journal["entries"]:
                key = entry["path"]
                live = self.project_root / key
                live.parent.mkdir(parents=True, exist_ok=True)
                if entry["existed"]:
                    backup = staging / "backup" / key
                    backup.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(live, backup)
                os.replace(staging / "new" / key, live)
        except BaseException:
            logger.error(f"Restore of {checkpoint.id} interrupted, rolling back")
            self._rollback(journal)
            raise

        (self.store_dir / JOURNAL_FILE).unlink()
        shutil.rmtree(staging, ignore_errors=True)

    def _rollback(self, journal: Mapping[str, Any]) -> None:
        staging = Path(journal["staging"])
        for entry in reversed(journal["entries"]):
            key = entry["path"]
            live = self.project_root / key
            backup = staging / "backup" / key
            staged = staging / "new" / key
            if entry["existed"]:
                if os.path.lexists(backup):
                    live.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(backup, live)
            elif not os.path.lexists(staged) and os.path.lexists(live):
                live.unlink()
        (self.store_dir / JOURNAL_FILE).unlink(missing_ok=True)
        shutil.rmtree(staging, ignore_errors=True)

    def recover(self) -> bool:
        """Roll back a restore that was killed midway, if one left its journal.

        Every store access runs this first, so a half-restored project is
        never observed. Returns True if a journal was found. Raises
        ConcurrentOperationInProgress while a restore is still running.
        """
        if not (self.store_dir / JOURNAL_FILE).exists():
            return False
        with self.lock.exclusive("recover"):
            return self._recover()

    @contextmanager
    def _reading(self, operation: str) -> Iterator[None]:
        self.recover()
        with self.lock.shared(operation):
            yield

    def _recover(self) -> bool:
        """Undo an interrupted restore and drop leftovers of interrupted creates/deletes."""
        journal_path = self.store_dir / JOURNAL_FILE
        found = journal_path.exists()
        if found:
            try:
                journal = json.loads(journal_path.read_text(encoding="utf-8"))
            except ValueError:
                # Torn journal: it was never fully written, so no swap started.
                logger.warning("Discarding incomplete restore journal")
                journal_path.unlink()
            else:
                logger.warning(f"Rolling back interrupted restore of {journal.get('checkpoint_id')}")
                self._rollback(journal)

        if self.store_dir.is_dir():
            for entry in self.store_dir.iterdir():
                if entry.is_dir() and entry.name.startswith((TMP_PREFIX, DELETING_PREFIX)):
                    logger.debug(f"Removing leftover {entry.name}")
                    shutil.rmtree(entry, ignore_errors=True)
        return found

    # ------------------------------------------------------------------
    # Prune / delete / export
    # ------------------------------------------------------------------

    def _remove(self, checkpoint_id: str) -> None:
        doomed = self.store_dir / f"{DELETING_PREFIX}{checkpoint_id}"
        os.replace(self.store_dir / checkpoint_id, doomed)
        fsync_directory(self.store_dir)
        shutil.rmtree(doomed)

    def prune(self, policy: RetentionPolicy | None = None, now: datetime | None = None) -> PruneResult:
        """Apply the retention policy.

        Automatic checkpoints past max_age, or beyond the newest
        max_auto_checkpoints, are deleted, except the newest automatic
        checkpoint. Manual checkpoints go only when listed in targets.
        """
        policy = policy or RetentionPolicy()
        now = now or datetime.now(timezone.utc)
        self.store_dir.mkdir(parents=True, exist_ok=True)

        with self.lock.exclusive("prune"):
            self._recover()
            checkpoints = self._all()
            automatic = [c for c in checkpoints if c.trigger == CheckpointTrigger.AUTO_PRE_OPERATION]
            newest_auto = automatic[0].id if automatic else None
            ranks = {c.id: rank for rank, c in enumerate(automatic)}

            doomed: list[str] = []
            for checkpoint in checkpoints:
                if checkpoint.id == newest_auto:
                    continue
                if checkpoint.trigger == CheckpointTrigger.MANUAL:
                    if checkpoint.id in policy.targets:
                        doomed.append(checkpoint.id)
                    continue
                too_old = policy.max_age is not None and now - checkpoint.created_at > policy.max_age
                too_many = (
                    policy.max_auto_checkpoints is not None
                    and ranks[checkpoint.id] >= policy.max_auto_checkpoints
                )
                if too_old or too_many or checkpoint.id in policy.targets:
                    doomed.append(checkpoint.id)

            for checkpoint_id in doomed:
                self._remove(checkpoint_id)
                logger.info(f"Pruned checkpoint {checkpoint_id}")

        kept = tuple(c.id for c in checkpoints if c.id not in doomed)
        return PruneResult(deleted=tuple(doomed), kept=kept)

    def delete(self, checkpoint_id: str) -> None:
        """Explicitly remove one checkpoint."""
        self.store_dir.mkdir(parents=True, exist_ok=True)
        with self.lock.exclusive("delete"):
            self._recover()
            directory = self._checkpoint_dir(checkpoint_id)
            if not directory.is_dir():
                raise CheckpointNotFound(checkpoint_id)
            self._remove(checkpoint_id)
        logger.info(f"Deleted checkpoint {checkpoint_id}")

    def export(self, checkpoint_id: str, destination: Path) -> Path:
        """Package payload, manifest and metadata as a gzip tarball.

        destination may be a directory (the archive is named <id>.tar.gz) or
        a file path. The checkpoint is validated first; the store is not
        modified.
        """
        destination = Path(destination)
        if destination.is_dir():
            destination = destination / f"{checkpoint_id}.tar.gz"
        destination.parent.mkdir(parents=True, exist_ok=True)

        with self._reading("export"):
            checkpoint = self._load(checkpoint_id)
            result = self._validate(checkpoint)
            if not result.valid:
                raise ChecksumMismatch(checkpoint_id, result.mismatches)

            directory = self.store_dir / checkpoint_id
            fd, temp_name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=str(destination.parent))
            os.close(fd)
            try:
                with tarfile.open(temp_name, "w:gz") as archive:
                    archive.add(directory / MANIFEST_FILE, arcname=MANIFEST_FILE)
                    archive.add(directory / METADATA_FILE, arcname=METADATA_FILE)
                    archive.add(directory / PAYLOAD_DIR, arcname=PAYLOAD_DIR)
                os.replace(temp_name, destination)
            except BaseException:
                Path(temp_name).unlink(missing_ok=True)
                raise

        logger.info(f"Exported {checkpoint_id} to {destination}")
        return destination
