"""
Tests for the checkpoint manager:
- Atomic create and SnapshotIncomplete
- Validation and tamper detection
- Transactional, idempotent restore
- Retention pruning
- Export
- Store locking
"""

import json
import os
import tarfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ..checkpoint import JOURNAL_FILE, CheckpointManager
from ..config import load_config
from ..errors import (
    ChecksumMismatch,
    CheckpointNotFound,
    ConcurrentOperationInProgress,
    SnapshotIncomplete,
)
from ..models import CheckpointTrigger, RetentionPolicy
from ..utils.fs import sha256_file


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = (tmp_path / "project").resolve()
    (root / "amplify" / "functions" / "api").mkdir(parents=True)
    (root / "amplify" / "functions" / "api" / "handler.ts").write_text("export const handler = () => 1;\n")
    (root / "amplify" / "backend.ts").write_text("defineBackend({});\n")
    (root / "package.json").write_text('{"name": "demo"}\n')
    (root / "node_modules" / "left-pad").mkdir(parents=True)
    (root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1;\n")
    return root


@pytest.fixture
def manager(project: Path) -> CheckpointManager:
    return CheckpointManager(
        project_root=project,
        store_dir=project / ".ace-flow" / "checkpoints",
        components={"backend": ["amplify"], "manifest": ["package.json"]},
        exclude=["node_modules"],
    )


def payload_path(manager: CheckpointManager, checkpoint_id: str, key: str) -> Path:
    return manager.store_dir / checkpoint_id / "files" / key


def backdate(manager: CheckpointManager, checkpoint_id: str, days: float) -> None:
    """Rewrite a checkpoint's creation time (metadata only; the manifest digest is unaffected)."""
    metadata_path = manager.store_dir / checkpoint_id / "metadata.json"
    metadata = json.loads(metadata_path.read_text())
    created = datetime.fromisoformat(metadata["created_at"]) - timedelta(days=days)
    metadata["created_at"] = created.isoformat()
    metadata_path.write_text(json.dumps(metadata))


def leave_killed_restore(manager: CheckpointManager, project: Path, checkpoint_id: str) -> Path:
    """Leave the project as a restore killed after swapping package.json would."""
    staging = manager.staging_dir / "restore-killed"
    (staging / "backup").mkdir(parents=True)
    (staging / "new").mkdir(parents=True)
    os.replace(project / "package.json", staging / "backup" / "package.json")
    (project / "package.json").write_text("half restored\n")
    journal = {
        "checkpoint_id": checkpoint_id,
        "staging": str(staging),
        "entries": [{"path": "package.json", "existed": True}],
    }
    (manager.store_dir / JOURNAL_FILE).write_text(json.dumps(journal))
    return staging


class TestCreate:
    """Tests for CheckpointManager.create."""

    def test_create_captures_components(self, manager: CheckpointManager):
        """All configured components are archived with a manifest entry per file."""
        checkpoint = manager.create(description="before deploy")

        assert checkpoint.id.startswith("cp-")
        assert checkpoint.trigger == CheckpointTrigger.MANUAL
        assert set(checkpoint.component_states) == {"backend", "manifest"}
        assert set(checkpoint.manifest.entries) == {
            "amplify/backend.ts",
            "amplify/functions/api/handler.ts",
            "package.json",
        }
        assert payload_path(manager, checkpoint.id, "package.json").read_text() == '{"name": "demo"}\n'
        assert checkpoint.total_bytes > 0

    def test_excludes_and_own_store(self, manager: CheckpointManager, project: Path):
        """Excluded paths and the store itself never end up in a checkpoint."""
        manager.components["everything"] = ["."]
        manager.create(component_states={"everything": "captured"})
        second = manager.create(component_states={"everything": "captured"})

        keys = set(second.manifest.entries)
        assert not any(k.startswith("node_modules/") for k in keys)
        assert not any(k.startswith(".ace-flow/") for k in keys)

    def test_component_states_recorded(self, manager: CheckpointManager):
        checkpoint = manager.create(component_states={"backend": "deployed"})
        assert dict(checkpoint.component_states) == {"backend": "deployed"}
        assert "package.json" not in checkpoint.manifest.entries

    def test_unknown_component(self, manager: CheckpointManager):
        """Declaring a component that is not configured fails without leaving anything behind."""
        with pytest.raises(SnapshotIncomplete) as exc_info:
            manager.create(component_states={"frontend": "built"})
        assert exc_info.value.details["component"] == "frontend"
        assert manager.list() == []

    def test_missing_path(self, manager: CheckpointManager, project: Path):
        """A configured path that does not exist names the component and path."""
        (project / "package.json").unlink()

        with pytest.raises(SnapshotIncomplete) as exc_info:
            manager.create()

        assert exc_info.value.details["component"] == "manifest"
        assert exc_info.value.details["path"] == "package.json"
        assert manager.list() == []
        assert not any(p.name.startswith(".tmp-") for p in manager.store_dir.iterdir())

    @pytest.mark.skipif(os.geteuid() == 0, reason="root can read unreadable files")
    def test_unreadable_file(self, manager: CheckpointManager, project: Path):
        """An unreadable source file aborts the checkpoint."""
        secret = project / "amplify" / "secret.ts"
        secret.write_text("x")
        secret.chmod(0)
        try:
            with pytest.raises(SnapshotIncomplete):
                manager.create()
        finally:
            secret.chmod(0o644)
        assert manager.list() == []

    def test_ids_are_time_sortable(self, manager: CheckpointManager):
        ids = [manager.create().id for _ in range(3)]
        assert ids == sorted(ids)

    def test_leftover_staging_removed(self, manager: CheckpointManager):
        """A staging directory from a crashed create is cleaned on the next write."""
        stale = manager.store_dir / ".tmp-cp-crashed"
        stale.mkdir(parents=True)
        manager.create()
        assert not stale.exists()


class TestValidate:
    """Tests for CheckpointManager.validate."""

    def test_valid(self, manager: CheckpointManager):
        checkpoint = manager.create()
        result = manager.validate(checkpoint.id)
        assert result.valid
        assert result.mismatches == ()

    def test_single_byte_flip(self, manager: CheckpointManager):
        """Flipping one byte of one archived file is detected and reported by path."""
        checkpoint = manager.create()
        target = payload_path(manager, checkpoint.id, "amplify/backend.ts")
        data = bytearray(target.read_bytes())
        data[0] ^= 0x01
        target.write_bytes(bytes(data))

        result = manager.validate(checkpoint.id)

        assert not result.valid
        assert result.mismatches == ("amplify/backend.ts",)

    def test_missing_and_extra_files(self, manager: CheckpointManager):
        checkpoint = manager.create()
        payload_path(manager, checkpoint.id, "package.json").unlink()
        payload_path(manager, checkpoint.id, "smuggled.sh").write_text("rm -rf /\n")

        result = manager.validate(checkpoint.id)

        assert set(result.mismatches) == {"package.json", "smuggled.sh"}

    def test_tampered_manifest(self, manager: CheckpointManager):
        """Editing the manifest itself is detected through the metadata digest."""
        checkpoint = manager.create()
        target = payload_path(manager, checkpoint.id, "package.json")
        target.write_text("tampered\n")
        manifest_path = manager.store_dir / checkpoint.id / "manifest.json"
        manifest = json.loads(manifest_path.read_text())
        manifest["package.json"] = sha256_file(target)
        manifest_path.write_text(json.dumps(manifest))

        result = manager.validate(checkpoint.id)

        assert result.mismatches == ("manifest.json",)

    def test_validate_does_not_touch_project(self, manager: CheckpointManager, project: Path):
        checkpoint = manager.create()
        (project / "package.json").write_text("changed\n")
        assert manager.validate(checkpoint.id).valid
        assert (project / "package.json").read_text() == "changed\n"

    def test_unknown_id(self, manager: CheckpointManager):
        with pytest.raises(CheckpointNotFound):
            manager.validate("cp-nope")


class TestRestore:
    """Tests for CheckpointManager.restore."""

    def test_restore_reverts_changes(self, manager: CheckpointManager, project: Path):
        checkpoint = manager.create()
        (project / "package.json").write_text("broken\n")
        (project / "amplify" / "backend.ts").unlink()

        result = manager.restore(checkpoint.id)

        assert (project / "package.json").read_text() == '{"name": "demo"}\n'
        assert (project / "amplify" / "backend.ts").read_text() == "defineBackend({});\n"
        assert result.files_restored == 2
        assert set(result.restored_components) == {"backend", "manifest"}
        assert not (manager.store_dir / JOURNAL_FILE).exists()

    def test_restore_is_idempotent(self, manager: CheckpointManager, project: Path):
        """Restoring twice leaves the same state; the second pass writes nothing."""
        checkpoint = manager.create()
        (project / "package.json").write_text("broken\n")

        manager.restore(checkpoint.id)
        second = manager.restore(checkpoint.id)

        assert second.files_restored == 0
        assert (project / "package.json").read_text() == '{"name": "demo"}\n'

    def test_restore_keeps_extra_live_files(self, manager: CheckpointManager, project: Path):
        checkpoint = manager.create()
        extra = project / "amplify" / "new.ts"
        extra.write_text("new\n")

        manager.restore(checkpoint.id)

        assert extra.read_text() == "new\n"

    def test_corrupt_checkpoint_writes_nothing(self, manager: CheckpointManager, project: Path):
        """A checksum mismatch aborts the restore before any live file is touched."""
        checkpoint = manager.create()
        target = payload_path(manager, checkpoint.id, "package.json")
        data = bytearray(target.read_bytes())
        data[-1] ^= 0xFF
        target.write_bytes(bytes(data))

        (project / "amplify" / "backend.ts").write_text("live edit\n")
        before = {p: p.read_bytes() for p in project.rglob("*") if p.is_file() and ".ace-flow" not in p.parts}
        mtimes = {p: p.stat().st_mtime_ns for p in before}

        with pytest.raises(ChecksumMismatch) as exc_info:
            manager.restore(checkpoint.id)

        assert exc_info.value.mismatches == ["package.json"]
        after = {p: p.read_bytes() for p in project.rglob("*") if p.is_file() and ".ace-flow" not in p.parts}
        assert after == before
        assert {p: p.stat().st_mtime_ns for p in before} == mtimes

    def test_interrupted_restore_rolled_back(self, manager: CheckpointManager, project: Path, monkeypatch):
        """A failure mid-swap restores every file it already replaced."""
        checkpoint = manager.create()
        (project / "package.json").write_text("live package\n")
        (project / "amplify" / "backend.ts").write_text("live backend\n")

        real_replace = os.replace
        swaps = {"n": 0}

        def flaky_replace(src, dst):
            if str(dst).startswith(str(project)) and "/.ace-flow/" not in str(dst):
                swaps["n"] += 1
                if swaps["n"] == 2:
                    raise OSError("disk full")
            return real_replace(src, dst)

        monkeypatch.setattr("aceflow.checkpoint.os.replace", flaky_replace)
        with pytest.raises(OSError):
            manager.restore(checkpoint.id)
        monkeypatch.undo()

        assert (project / "package.json").read_text() == "live package\n"
        assert (project / "amplify" / "backend.ts").read_text() == "live backend\n"
        assert not (manager.store_dir / JOURNAL_FILE).exists()

    def test_leftover_journal_recovered(self, manager: CheckpointManager, project: Path):
        """A journal left by a killed restore is rolled back on the next write."""
        checkpoint = manager.create()
        staging = leave_killed_restore(manager, project, checkpoint.id)

        manager.create()

        assert (project / "package.json").read_text() == '{"name": "demo"}\n'
        assert not (manager.store_dir / JOURNAL_FILE).exists()
        assert not staging.exists()

    def test_leftover_journal_recovered_by_readers(self, manager: CheckpointManager, project: Path):
        """Reading the store after a killed restore sees the pre-restore project, never the half-swapped one."""
        checkpoint = manager.create()
        staging = leave_killed_restore(manager, project, checkpoint.id)
        reopened = CheckpointManager(
            project_root=project,
            store_dir=manager.store_dir,
            components=manager.components,
            exclude=["node_modules"],
        )

        assert [s.id for s in reopened.list()] == [checkpoint.id]
        assert (project / "package.json").read_text() == '{"name": "demo"}\n'
        assert not (manager.store_dir / JOURNAL_FILE).exists()
        assert not staging.exists()
        assert reopened.validate(checkpoint.id).valid
        assert reopened.recover() is False

    def test_reader_fails_fast_during_running_restore(self, manager: CheckpointManager, project: Path):
        """While a restore holds the store, a reader fails fast instead of rolling it back."""
        checkpoint = manager.create()
        leave_killed_restore(manager, project, checkpoint.id)

        with manager.lock.exclusive("restore"):
            with pytest.raises(ConcurrentOperationInProgress):
                manager.list()
            assert (manager.store_dir / JOURNAL_FILE).exists()

    def test_unknown_id(self, manager: CheckpointManager):
        with pytest.raises(CheckpointNotFound):
            manager.restore("cp-missing")


class TestListAndPrune:
    """Tests for listing and retention."""

    def test_list_newest_first(self, manager: CheckpointManager):
        first = manager.create()
        second = manager.create(trigger=CheckpointTrigger.AUTO_PRE_OPERATION)

        ids = [s.id for s in manager.list()]
        assert ids == [second.id, first.id]
        assert [s.id for s in manager.list(trigger=CheckpointTrigger.MANUAL)] == [first.id]

    def test_list_filters(self, manager: CheckpointManager):
        backend = manager.create(component_states={"backend": "ok"})
        manager.create(component_states={"manifest": "ok"})
        assert [s.id for s in manager.list(component="backend")] == [backend.id]
        future = datetime.now(timezone.utc) + timedelta(days=1)
        assert manager.list(since=future) == []

    def test_prune_keeps_newest_auto(self, manager: CheckpointManager):
        """Even when every automatic checkpoint is expired, the newest survives."""
        old = manager.create(trigger=CheckpointTrigger.AUTO_PRE_OPERATION)
        newest = manager.create(trigger=CheckpointTrigger.AUTO_PRE_OPERATION)
        backdate(manager, old.id, 30)
        backdate(manager, newest.id, 20)

        result = manager.prune(RetentionPolicy(max_age=timedelta(days=7)))

        assert result.deleted == (old.id,)
        assert [s.id for s in manager.list()] == [newest.id]

    def test_prune_exempts_manual(self, manager: CheckpointManager):
        manual = manager.create()
        backdate(manager, manual.id, 90)
        manager.create(trigger=CheckpointTrigger.AUTO_PRE_OPERATION)

        result = manager.prune(RetentionPolicy(max_age=timedelta(days=1)))

        assert result.deleted == ()
        assert manual.id in result.kept

    def test_prune_targets_manual(self, manager: CheckpointManager):
        manual = manager.create()
        result = manager.prune(RetentionPolicy(targets=frozenset({manual.id})))
        assert result.deleted == (manual.id,)

    def test_prune_count_limit(self, manager: CheckpointManager):
        """Only the newest max_auto_checkpoints automatic checkpoints are kept."""
        ids = [manager.create(trigger=CheckpointTrigger.AUTO_PRE_OPERATION).id for _ in range(4)]

        result = manager.prune(RetentionPolicy(max_auto_checkpoints=2))

        assert set(result.deleted) == set(ids[:2])
        assert [s.id for s in manager.list()] == list(reversed(ids[2:]))

    def test_prune_empty_store(self, manager: CheckpointManager):
        result = manager.prune()
        assert result.deleted == ()
        assert result.kept == ()

    def test_delete(self, manager: CheckpointManager):
        checkpoint = manager.create()
        manager.delete(checkpoint.id)
        assert manager.list() == []
        with pytest.raises(CheckpointNotFound):
            manager.delete(checkpoint.id)


class TestExport:
    """Tests for CheckpointManager.export."""

    def test_export_contents(self, manager: CheckpointManager, tmp_path: Path):
        checkpoint = manager.create()
        out_dir = tmp_path / "exports"
        out_dir.mkdir()

        archive_path = manager.export(checkpoint.id, out_dir)

        assert archive_path == out_dir / f"{checkpoint.id}.tar.gz"
        with tarfile.open(archive_path, "r:gz") as archive:
            names = set(archive.getnames())
            metadata = json.load(archive.extractfile("metadata.json"))
        assert {"manifest.json", "metadata.json", "files/package.json", "files/amplify/backend.ts"} <= names
        assert metadata["id"] == checkpoint.id
        assert manager.validate(checkpoint.id).valid

    def test_export_refuses_corrupt(self, manager: CheckpointManager, tmp_path: Path):
        checkpoint = manager.create()
        payload_path(manager, checkpoint.id, "package.json").write_text("corrupt")
        with pytest.raises(ChecksumMismatch):
            manager.export(checkpoint.id, tmp_path / "out.tar.gz")
        assert not (tmp_path / "out.tar.gz").exists()


class TestLocking:
    """Store locks reject concurrent mutators instead of queueing them."""

    def test_create_during_restore(self, manager: CheckpointManager):
        with manager.lock.exclusive("restore"):
            with pytest.raises(ConcurrentOperationInProgress) as exc_info:
                manager.create()
        assert "Retry" in exc_info.value.message

    def test_reader_during_restore(self, manager: CheckpointManager):
        manager.create()
        with manager.lock.exclusive("restore"):
            with pytest.raises(ConcurrentOperationInProgress):
                manager.list()

    def test_readers_share(self, manager: CheckpointManager):
        checkpoint = manager.create()
        with manager.lock.shared("list"):
            assert manager.validate(checkpoint.id).valid

    def test_restore_during_create(self, manager: CheckpointManager):
        checkpoint = manager.create()
        with manager.lock.writer("create"):
            with pytest.raises(ConcurrentOperationInProgress):
                manager.restore(checkpoint.id)


class TestFromConfig:
    def test_from_config(self, project: Path):
        config = load_config(project, environ={})
        manager = CheckpointManager.from_config(config)
        checkpoint = manager.create()

        assert manager.store_dir == project / ".ace-flow" / "checkpoints"
        assert "package.json" in checkpoint.manifest.entries
        assert not any(k.startswith("node_modules/") for k in checkpoint.manifest.entries)
