import os

import pytest

from media_pipeline.errors import ErrorCode, PipelineError
from media_pipeline.models.domain import StoredArtifact
from media_pipeline.services.cleanup_service import CleanupManager
from media_pipeline.storage.repository import ArtifactRegistry

HOUR = 3600.0
NOW = 1_700_000_000.0


def _write(path, size=10, age_hours=0.0):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(b"x" * size)
    mtime = NOW - age_hours * HOUR
    os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def manager(temp_root):
    return CleanupManager(temp_root, threshold_bytes=100, clock=lambda: NOW)


@pytest.fixture
def aged_project(temp_root):
    base = os.path.join(temp_root, "p1")
    return {
        "young": _write(os.path.join(base, "images", "a.png"), age_hours=10),
        "old": _write(os.path.join(base, "images", "b.png"), age_hours=30),
        "oldest": _write(os.path.join(base, "videos", "c.mp4"), age_hours=50),
    }


def test_cleanup_removes_only_files_past_max_age(manager, aged_project):
    result = manager.cleanup_project_temp_files("p1", max_age_seconds=24 * HOUR)

    assert result.deleted_files == 2
    assert result.deleted_bytes == 20
    assert result.errors == []
    assert os.path.exists(aged_project["young"])
    assert not os.path.exists(aged_project["old"])
    assert not os.path.exists(aged_project["oldest"])
    assert not os.path.exists(os.path.dirname(aged_project["oldest"]))


def test_dry_run_reports_same_counts_without_deleting(manager, aged_project):
    dry = manager.cleanup_project_temp_files("p1", max_age_seconds=24 * HOUR, dry_run=True)
    assert all(os.path.exists(path) for path in aged_project.values())

    real = manager.cleanup_project_temp_files("p1", max_age_seconds=24 * HOUR)

    assert (dry.deleted_files, dry.deleted_bytes) == (real.deleted_files, real.deleted_bytes)


def test_preserved_categories_are_never_touched(manager, temp_root):
    edit = _write(os.path.join(temp_root, "p1", "timeline-edits", "clip-1.mp4"), age_hours=100)
    final = _write(os.path.join(temp_root, "p1", "final", "output.mp4"), age_hours=100)
    stale = _write(os.path.join(temp_root, "p1", "temp", "scratch.bin"), age_hours=100)

    result = manager.cleanup_project_temp_files("p1", max_age_seconds=HOUR)

    assert os.path.exists(edit)
    assert os.path.exists(final)
    assert not os.path.exists(stale)
    assert result.deleted_files == 1


def test_missing_project_is_a_no_op(manager):
    result = manager.cleanup_project_temp_files("ghost")
    assert result.deleted_files == 0
    assert result.errors == []


def test_invalid_project_id_is_rejected(manager):
    with pytest.raises(PipelineError) as excinfo:
        manager.cleanup_project_temp_files("../escape")
    assert excinfo.value.code == ErrorCode.VALIDATION_ERROR


def test_disk_usage_groups_by_category_and_threshold(manager, aged_project, temp_root):
    _write(os.path.join(temp_root, "p1", "loose.txt"), size=5)

    usage = manager.disk_usage("p1")

    assert usage.total_bytes == 35
    assert usage.file_count == 4
    assert usage.by_category["images"].count == 2
    assert usage.by_category["videos"].bytes == 10
    assert usage.by_category["root"].count == 1
    assert manager.check_threshold("p1").exceeded is False
    assert manager.check_threshold("p1", threshold_bytes=30).exceeded is True


def test_cleanup_all_isolates_projects(manager, temp_root):
    _write(os.path.join(temp_root, "p1", "images", "old.png"), age_hours=48)
    _write(os.path.join(temp_root, "p2", "images", "old.png"), age_hours=48)

    results = manager.cleanup_all_temp_files()

    assert sorted(results) == ["p1", "p2"]
    assert all(result.deleted_files == 1 for result in results.values())


def test_uploaded_local_copies_are_removed(manager, temp_root):
    registry = ArtifactRegistry()
    local = _write(os.path.join(temp_root, "p1", "images", "up.png"), size=7)
    registry.register(
        StoredArtifact(key="projects/p1/images/up.png", local_path=local, size_bytes=7, mime_type="image/png", project_id="p1"),
        uploaded=True,
    )
    kept = _write(os.path.join(temp_root, "p1", "images", "local-only.png"))
    registry.register(
        StoredArtifact(key="local-only", local_path=kept, size_bytes=10, mime_type="image/png", project_id="p1")
    )

    dry = manager.cleanup_uploaded_files(registry, dry_run=True)
    assert dry.deleted_files == 1
    assert os.path.exists(local)

    result = manager.cleanup_uploaded_files(registry)

    assert result.deleted_files == 1
    assert result.deleted_bytes == 7
    assert not os.path.exists(local)
    assert os.path.exists(kept)
    assert registry.get("projects/p1/images/up.png").local_path is None


def test_orphans_are_reported_not_deleted(manager, temp_root):
    registry = ArtifactRegistry()
    referenced = _write(os.path.join(temp_root, "p1", "images", "used.png"))
    orphan = _write(os.path.join(temp_root, "p1", "images", "stray.png"))
    registry.register(
        StoredArtifact(key="used", local_path=referenced, size_bytes=10, mime_type="image/png", project_id="p1")
    )

    orphans = manager.find_orphaned_files(registry)

    assert orphans == [orphan]
    assert os.path.exists(orphan)


def test_orphan_deletion_requires_confirmation(manager, temp_root, tmp_path):
    orphan = _write(os.path.join(temp_root, "p1", "images", "stray.png"))
    outside = _write(str(tmp_path / "elsewhere.bin"))

    with pytest.raises(PipelineError):
        manager.delete_orphaned_files([orphan])
    assert os.path.exists(orphan)

    result = manager.delete_orphaned_files([orphan, outside], confirm=True)

    assert result.deleted_files == 1
    assert not os.path.exists(orphan)
    assert os.path.exists(outside)
    assert len(result.errors) == 1


def test_delete_project_temp_files_removes_tree(manager, aged_project, temp_root):
    result = manager.delete_project_temp_files("p1")
    assert result.deleted_files == 3
    assert not os.path.exists(os.path.join(temp_root, "p1"))


def test_scheduled_cleanup_runs_all_phases(manager, aged_project):
    registry = ArtifactRegistry()

    report = manager.run_scheduled_cleanup(registry)

    assert report.timed_out is False
    assert report.temp_cleanup["p1"].deleted_files == 2
    assert report.orphaned_files == [aged_project["young"]]


def test_scheduled_cleanup_stops_when_budget_is_spent(manager, temp_root):
    for project in ("p1", "p2", "p3"):
        _write(os.path.join(temp_root, project, "images", "old.png"), age_hours=48)
    ticks = iter([0.0, 0.0, 10.0, 400.0, 400.0])

    report = manager.run_scheduled_cleanup(ArtifactRegistry(), budget_seconds=300, monotonic=lambda: next(ticks))

    assert report.timed_out is True
    assert sorted(report.temp_cleanup) == ["p1", "p2"]
    assert report.orphaned_files == []
    assert os.path.exists(os.path.join(temp_root, "p3", "images", "old.png"))
