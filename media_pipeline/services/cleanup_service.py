from __future__ import annotations

import logging
import os
import time
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from media_pipeline.errors import validation_error
from media_pipeline.models.domain import (
    CategoryUsage,
    CleanupResult,
    DiskUsage,
    ScheduledCleanupReport,
    ThresholdCheck,
)
from media_pipeline.storage.repository import PersistenceLookup

DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60
DEFAULT_THRESHOLD_BYTES = 5 * 1024 * 1024 * 1024
# Directories ffmpeg may still read from while a render is in flight.
PRESERVE_FOR_FFMPEG = ("timeline-edits", "final", "frames")
ROOT_CATEGORY = "root"


class CleanupManager:
    """Keeps project temp trees under ``temp_root`` bounded.

    Every pass is best effort: a file that cannot be removed is reported in
    ``errors`` and the walk continues.
    """

    def __init__(
        self,
        temp_root: str,
        threshold_bytes: int = DEFAULT_THRESHOLD_BYTES,
        default_max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        preserve_categories: Iterable[str] = PRESERVE_FOR_FFMPEG,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.temp_root = temp_root
        self.threshold_bytes = threshold_bytes
        self.default_max_age_seconds = default_max_age_seconds
        self.preserve_categories = tuple(preserve_categories)
        self.clock = clock
        self.log = logger or logging.getLogger(__name__)

    def project_dir(self, project_id: str) -> str:
        if not project_id or project_id in (".", "..") or os.sep in project_id or "/" in project_id:
            raise validation_error(f"invalid project id: {project_id!r}")
        return os.path.join(self.temp_root, project_id)

    def list_projects(self) -> List[str]:
        if not os.path.isdir(self.temp_root):
            return []
        return sorted(
            entry.name for entry in os.scandir(self.temp_root) if entry.is_dir(follow_symlinks=False)
        )

    def disk_usage(self, project_id: str) -> DiskUsage:
        usage = DiskUsage(project_id=project_id)
        project_dir = self.project_dir(project_id)
        for category, path in _walk_files(project_dir):
            try:
                size = os.stat(path).st_size
            except OSError:
                continue
            bucket = usage.by_category.setdefault(category, CategoryUsage())
            bucket.bytes += size
            bucket.count += 1
            usage.total_bytes += size
            usage.file_count += 1
        return usage

    def check_threshold(self, project_id: str, threshold_bytes: int | None = None) -> ThresholdCheck:
        threshold = self.threshold_bytes if threshold_bytes is None else threshold_bytes
        usage = self.disk_usage(project_id)
        exceeded = usage.total_bytes > threshold
        if exceeded:
            self.log.warning(
                "project temp storage above threshold",
                extra={"project_id": project_id, "total_bytes": usage.total_bytes, "threshold_bytes": threshold},
            )
        return ThresholdCheck(exceeded=exceeded, threshold_bytes=threshold, usage=usage)

    def cleanup_project_temp_files(
        self,
        project_id: str,
        max_age_seconds: float | None = None,
        dry_run: bool = False,
        preserve_categories: Iterable[str] | None = None,
    ) -> CleanupResult:
        max_age = self.default_max_age_seconds if max_age_seconds is None else max_age_seconds
        preserved = set(self.preserve_categories if preserve_categories is None else preserve_categories)
        result = CleanupResult(scope=project_id)
        project_dir = self.project_dir(project_id)
        if not os.path.isdir(project_dir):
            return result

        now = self.clock()
        try:
            entries = sorted(os.scandir(project_dir), key=lambda entry: entry.name)
        except OSError as exc:
            result.errors.append(f"Failed to clean project {project_id}: {exc}")
            return result

        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                if entry.name in preserved:
                    result.preserved_files += 1
                    continue
                for _, path in _walk_files(entry.path, category=entry.name, errors=result.errors):
                    self._expire_file(path, now, max_age, dry_run, result)
                if not dry_run:
                    _remove_empty_dirs(entry.path, result.errors)
            elif entry.is_file(follow_symlinks=False):
                self._expire_file(entry.path, now, max_age, dry_run, result)

        self.log.info(
            "project temp cleanup finished",
            extra={
                "project_id": project_id,
                "dry_run": dry_run,
                "deleted_files": result.deleted_files,
                "deleted_bytes": result.deleted_bytes,
                "error_count": len(result.errors),
            },
        )
        return result

    def cleanup_all_temp_files(
        self,
        max_age_seconds: float | None = None,
        dry_run: bool = False,
        preserve_categories: Iterable[str] | None = None,
    ) -> Dict[str, CleanupResult]:
        results: Dict[str, CleanupResult] = {}
        for project_id in self.list_projects():
            results[project_id] = self._cleanup_isolated(project_id, max_age_seconds, dry_run, preserve_categories)
        return results

    def cleanup_uploaded_files(
        self,
        persistence: PersistenceLookup,
        project_id: str | None = None,
        dry_run: bool = False,
    ) -> CleanupResult:
        """Drop local copies of artifacts already held by object storage."""
        result = CleanupResult(scope=project_id or "uploaded")
        for artifact in persistence.list_uploaded_local_copies(project_id):
            path = artifact.local_path
            if not path:
                continue
            try:
                size = os.stat(path).st_size
                if not dry_run:
                    os.remove(path)
                    persistence.clear_local_path(artifact.key)
            except FileNotFoundError:
                if not dry_run:
                    persistence.clear_local_path(artifact.key)
                continue
            except OSError as exc:
                result.errors.append(f"Failed to delete {path}: {exc}")
                continue
            result.deleted_files += 1
            result.deleted_bytes += size
        return result

    def find_orphaned_files(self, persistence: PersistenceLookup, project_id: str | None = None) -> List[str]:
        base = self.project_dir(project_id) if project_id else self.temp_root
        if not os.path.isdir(base):
            return []
        referenced = {os.path.realpath(path) for path in persistence.list_artifact_references(project_id)}
        orphans = [path for _, path in _walk_files(base) if os.path.realpath(path) not in referenced]
        if orphans:
            self.log.info(
                "orphaned files found",
                extra={"project_id": project_id, "orphan_count": len(orphans)},
            )
        return orphans

    def delete_orphaned_files(self, paths: Iterable[str], confirm: bool = False) -> CleanupResult:
        """Operator-triggered removal of files previously reported as orphans."""
        if not confirm:
            raise validation_error("orphan deletion requires confirm=True")
        root = os.path.realpath(self.temp_root)
        result = CleanupResult(scope="orphans")
        for path in paths:
            real = os.path.realpath(path)
            if os.path.commonpath([root, real]) != root:
                result.errors.append(f"Refusing to delete outside temp root: {path}")
                continue
            try:
                size = os.stat(real).st_size
                os.remove(real)
            except OSError as exc:
                result.errors.append(f"Failed to delete {path}: {exc}")
                continue
            result.deleted_files += 1
            result.deleted_bytes += size
        self.log.warning(
            "orphaned files deleted",
            extra={"deleted_files": result.deleted_files, "error_count": len(result.errors)},
        )
        return result

    def delete_project_temp_files(self, project_id: str) -> CleanupResult:
        result = CleanupResult(scope=project_id)
        project_dir = self.project_dir(project_id)
        if not os.path.isdir(project_dir):
            return result
        for dirpath, dirnames, filenames in os.walk(project_dir, topdown=False):
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                try:
                    size = os.lstat(path).st_size
                    os.remove(path)
                except OSError as exc:
                    result.errors.append(f"Failed to delete {path}: {exc}")
                    continue
                result.deleted_files += 1
                result.deleted_bytes += size
            for dirname in dirnames:
                path = os.path.join(dirpath, dirname)
                try:
                    if os.path.islink(path):
                        os.remove(path)
                    else:
                        os.rmdir(path)
                except OSError as exc:
                    result.errors.append(f"Failed to remove directory {path}: {exc}")
        try:
            os.rmdir(project_dir)
        except OSError as exc:
            result.errors.append(f"Failed to delete project directory: {exc}")
        self.log.info(
            "project temp files deleted",
            extra={"project_id": project_id, "deleted_files": result.deleted_files},
        )
        return result

    def run_scheduled_cleanup(
        self,
        persistence: PersistenceLookup,
        budget_seconds: float = 300,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> ScheduledCleanupReport:
        """One sweep: aged temp files, uploaded local copies, then orphan report.

        The budget is checked between projects and between phases; once it is
        spent the partial report is returned with ``timed_out`` set.
        """
        started = monotonic()
        report = ScheduledCleanupReport()

        def over_budget() -> bool:
            return monotonic() - started >= budget_seconds

        self.log.info("scheduled cleanup started", extra={"budget_seconds": budget_seconds})
        for project_id in self.list_projects():
            if over_budget():
                report.timed_out = True
                break
            result = self._cleanup_isolated(project_id, None, False, None)
            report.temp_cleanup[project_id] = result
            report.errors.extend(result.errors)

        if not report.timed_out and over_budget():
            report.timed_out = True
        if not report.timed_out:
            try:
                report.uploaded_cleanup = self.cleanup_uploaded_files(persistence)
            except Exception as exc:
                self.log.warning("uploaded file cleanup failed", exc_info=True)
                report.uploaded_cleanup.errors.append(f"Uploaded cleanup failed: {exc}")
            report.errors.extend(report.uploaded_cleanup.errors)

        if not report.timed_out and over_budget():
            report.timed_out = True
        if not report.timed_out:
            try:
                report.orphaned_files = self.find_orphaned_files(persistence)
            except Exception as exc:
                self.log.warning("orphan scan failed", exc_info=True)
                report.errors.append(f"Orphan scan failed: {exc}")

        report.duration_seconds = monotonic() - started
        self.log.info(
            "scheduled cleanup finished",
            extra={
                "projects_cleaned": len(report.temp_cleanup),
                "uploaded_files_cleaned": report.uploaded_cleanup.deleted_files,
                "orphaned_files_found": len(report.orphaned_files),
                "timed_out": report.timed_out,
                "duration_seconds": round(report.duration_seconds, 3),
            },
        )
        return report

    def _cleanup_isolated(
        self,
        project_id: str,
        max_age_seconds: float | None,
        dry_run: bool,
        preserve_categories: Iterable[str] | None,
    ) -> CleanupResult:
        try:
            return self.cleanup_project_temp_files(project_id, max_age_seconds, dry_run, preserve_categories)
        except Exception as exc:
            self.log.warning("project cleanup failed", extra={"project_id": project_id}, exc_info=True)
            return CleanupResult(scope=project_id, errors=[f"Failed to clean project {project_id}: {exc}"])

    def _expire_file(self, path: str, now: float, max_age: float, dry_run: bool, result: CleanupResult) -> None:
        try:
            stat = os.lstat(path)
            if now - stat.st_mtime < max_age:
                result.preserved_files += 1
                return
            if not dry_run:
                os.remove(path)
        except OSError as exc:
            result.errors.append(f"Failed to process {path}: {exc}")
            return
        result.deleted_files += 1
        result.deleted_bytes += stat.st_size


def _walk_files(
    base: str,
    category: str | None = None,
    errors: List[str] | None = None,
) -> Iterator[Tuple[str, str]]:
    """Yield ``(category, path)`` for every regular file under ``base``."""
    if not os.path.isdir(base):
        return

    def on_error(exc: OSError) -> None:
        if errors is not None:
            errors.append(f"Failed to scan {exc.filename}: {exc.strerror}")

    for dirpath, dirnames, filenames in os.walk(base, onerror=on_error):
        dirnames.sort()
        if category is not None:
            bucket = category
        else:
            relative = os.path.relpath(dirpath, base)
            bucket = ROOT_CATEGORY if relative == os.curdir else relative.split(os.sep, 1)[0]
        for filename in sorted(filenames):
            path = os.path.join(dirpath, filename)
            if os.path.isfile(path) and not os.path.islink(path):
                yield bucket, path


def _remove_empty_dirs(base: str, errors: List[str]) -> None:
    for dirpath, _, _ in os.walk(base, topdown=False):
        try:
            if not os.listdir(dirpath):
                os.rmdir(dirpath)
        except OSError as exc:
            errors.append(f"Failed to remove directory {dirpath}: {exc}")
