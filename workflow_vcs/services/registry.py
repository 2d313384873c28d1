"""
Service Registry
Process-wide VersionService and MergeOrchestrator, built lazily from settings.
"""
from typing import Optional

from workflow_vcs.core.client import get_client
from workflow_vcs.services.catalog import NodeTypeCatalog, build_catalog
from workflow_vcs.services.orchestrator import MergeOrchestrator
from workflow_vcs.services.store import VersionRepository, build_repository
from workflow_vcs.services.versioning import DocumentSource, VersionService

_versions: Optional[VersionService] = None
_orchestrator: Optional[MergeOrchestrator] = None


def configure(
    repository: Optional[VersionRepository] = None,
    engine: Optional[DocumentSource] = None,
    catalog: Optional[NodeTypeCatalog] = None,
    push_to_engine: Optional[bool] = None
) -> MergeOrchestrator:
    """Replace the shared services, e.g. with a fake engine in tests."""
    global _versions, _orchestrator
    _versions = VersionService(
        repository or build_repository(),
        engine or get_client(),
        push_to_engine=push_to_engine
    )
    _orchestrator = MergeOrchestrator(_versions, catalog or build_catalog())
    return _orchestrator


def get_merge_orchestrator() -> MergeOrchestrator:
    if _orchestrator is None:
        configure()
    return _orchestrator


def get_version_service() -> VersionService:
    return get_merge_orchestrator().versions


def reset() -> None:
    global _versions, _orchestrator
    _versions = None
    _orchestrator = None
