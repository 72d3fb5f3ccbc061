"""Tests for builds/service.py module.

Uses an in-memory SQLite database and the fake engine and packager.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from winpe_imagegen.builds.models import BuildRecord
from winpe_imagegen.builds.orchestrator import BuildOrchestrator
from winpe_imagegen.builds.request import BuildRequest
from winpe_imagegen.builds.service import (
    BuildNotFoundError,
    get_build,
    list_builds,
    run_build,
)
from winpe_imagegen.db import Base
from winpe_imagegen.errors import BuildFailedError, DismountError
from winpe_imagegen.types import BuildStatus


@pytest.fixture
def db_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session(db_engine):
    """Create a session for testing."""
    factory = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def orchestrator(engine, packager, provider, settings):
    """An orchestrator wired to fakes."""
    return BuildOrchestrator(engine, packager, provider, settings)


@pytest.fixture
def build_request(boot_wim, tmp_path):
    """A default ISO build request."""
    return BuildRequest(
        source_image=boot_wim,
        output_path=tmp_path / "out" / "winpe.iso",
        runtime_version="7.5.0",
    )


def add_record(session, status, runtime_version="7.5.0"):
    """Insert a build record directly."""
    record = BuildRecord(
        source_image="/media/sources/boot.wim",
        output_path="/out/winpe.iso",
        runtime_version=runtime_version,
        artifact_format="iso",
        status=status.value,
    )
    session.add(record)
    session.commit()
    return record


class TestRunBuild:
    """Tests for run_build."""

    def test_success_is_recorded(self, session, orchestrator, build_request):
        """A successful build records its artifact."""
        record, artifact = run_build(session, orchestrator, build_request)

        stored = get_build(session, record.id)
        assert stored.is_succeeded()
        assert stored.stage == "done"
        assert stored.artifact_sha256 == artifact.sha256
        assert stored.artifact_size_bytes == artifact.size_bytes
        assert stored.manifest_path == str(artifact.manifest_path)
        assert stored.started_at is not None
        assert stored.finished_at is not None
        assert stored.input_snapshot["runtime_version"] == "7.5.0"
        assert stored.error_message is None

    def test_failure_is_recorded(self, session, orchestrator, engine, build_request):
        """A failed build records its stage, error and diagnostics."""
        engine.dismount_errors.append(DismountError("commit failed"))

        with pytest.raises(BuildFailedError) as exc_info:
            run_build(session, orchestrator, build_request)

        (stored,) = list_builds(session, status=BuildStatus.FAILED)
        assert stored.stage == "dismount"
        assert stored.error_type == "DismountError"
        assert stored.error_code == "dismount_error"
        assert stored.error_message == "commit failed"
        assert stored.diagnostics_path == str(exc_info.value.diagnostics_path)
        assert stored.artifact_sha256 is None
        assert stored.finished_at is not None


class TestGetBuild:
    """Tests for get_build."""

    def test_found(self, session):
        """Existing records are returned."""
        record = add_record(session, BuildStatus.SUCCEEDED)
        assert get_build(session, record.id).id == record.id

    def test_not_found(self, session):
        """Missing records raise BuildNotFoundError."""
        with pytest.raises(BuildNotFoundError) as exc_info:
            get_build(session, 999)
        assert exc_info.value.build_id == 999
        assert exc_info.value.code == "build_not_found"


class TestListBuilds:
    """Tests for list_builds."""

    def test_newest_first(self, session):
        """Records are ordered newest first."""
        first = add_record(session, BuildStatus.SUCCEEDED)
        second = add_record(session, BuildStatus.FAILED)
        assert [b.id for b in list_builds(session)] == [second.id, first.id]

    def test_filters(self, session):
        """Status and runtime filters combine."""
        add_record(session, BuildStatus.SUCCEEDED, "7.5.0")
        add_record(session, BuildStatus.FAILED, "7.5.0")
        add_record(session, BuildStatus.SUCCEEDED, "7.4.6")

        assert len(list_builds(session, status=BuildStatus.SUCCEEDED)) == 2
        assert len(list_builds(session, runtime_version="7.4.6")) == 1
        matches = list_builds(session, status=BuildStatus.FAILED, runtime_version="7.5.0")
        assert len(matches) == 1

    def test_limit(self, session):
        """The limit caps the number of results."""
        for _ in range(5):
            add_record(session, BuildStatus.SUCCEEDED)
        assert len(list_builds(session, limit=3)) == 3
