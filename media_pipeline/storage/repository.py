from __future__ import annotations

import os
from threading import Lock
from typing import Dict, Iterable, List, Optional, Protocol

from media_pipeline.models.domain import GenerationJob, StoredArtifact


class PersistenceLookup(Protocol):
    """Read side of the persistence layer the pipeline depends on."""

    def find_projects_owned_by(self, user_id: str) -> List[str]: ...

    def list_artifact_references(self, project_id: str | None = None) -> List[str]: ...

    def list_uploaded_local_copies(self, project_id: str | None = None) -> List[StoredArtifact]: ...

    def clear_local_path(self, artifact_key: str) -> None: ...


class GenerationJobRepository:
    def __init__(self) -> None:
        self._jobs: Dict[str, GenerationJob] = {}
        self._lock = Lock()

    def save(self, job: GenerationJob) -> GenerationJob:
        with self._lock:
            self._jobs[job.job_id] = job.model_copy(deep=True)
        return job

    def get(self, job_id: str) -> GenerationJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None


class ArtifactRegistry:
    """In-memory persistence collaborator tracking which artifacts projects still reference."""

    def __init__(self) -> None:
        self._artifacts: Dict[str, StoredArtifact] = {}
        self._uploaded: set[str] = set()
        self._owners: Dict[str, set[str]] = {}
        self._lock = Lock()

    def register(self, artifact: StoredArtifact, uploaded: bool = False) -> StoredArtifact:
        with self._lock:
            self._artifacts[artifact.key] = artifact.model_copy(deep=True)
            if uploaded:
                self._uploaded.add(artifact.key)
            else:
                self._uploaded.discard(artifact.key)
        return artifact

    def assign_owner(self, user_id: str, project_id: str) -> None:
        with self._lock:
            self._owners.setdefault(user_id, set()).add(project_id)

    def forget(self, key: str) -> Optional[StoredArtifact]:
        with self._lock:
            self._uploaded.discard(key)
            return self._artifacts.pop(key, None)

    def remove_project(self, project_id: str) -> None:
        with self._lock:
            for key in [key for key, item in self._artifacts.items() if item.project_id == project_id]:
                self._artifacts.pop(key, None)
                self._uploaded.discard(key)
            for projects in self._owners.values():
                projects.discard(project_id)

    def get(self, key: str) -> Optional[StoredArtifact]:
        with self._lock:
            artifact = self._artifacts.get(key)
            return artifact.model_copy(deep=True) if artifact else None

    def find_projects_owned_by(self, user_id: str) -> List[str]:
        with self._lock:
            return sorted(self._owners.get(user_id, set()))

    def list_artifact_references(self, project_id: str | None = None) -> List[str]:
        with self._lock:
            return [
                os.path.realpath(item.local_path)
                for item in self._filter(self._artifacts.values(), project_id)
                if item.local_path
            ]

    def list_uploaded_local_copies(self, project_id: str | None = None) -> List[StoredArtifact]:
        with self._lock:
            return [
                item.model_copy(deep=True)
                for item in self._filter(self._artifacts.values(), project_id)
                if item.key in self._uploaded and item.local_path
            ]

    def clear_local_path(self, artifact_key: str) -> None:
        with self._lock:
            artifact = self._artifacts.get(artifact_key)
            if artifact is not None:
                artifact.local_path = None

    @staticmethod
    def _filter(items: Iterable[StoredArtifact], project_id: str | None) -> Iterable[StoredArtifact]:
        if project_id is None:
            return items
        return (item for item in items if item.project_id == project_id)
