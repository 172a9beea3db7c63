"""
Unit tests for build handlers.
"""

from datetime import timedelta
from pathlib import Path
from uuid import UUID, uuid4

import pytest

from buildqueue.constants import APK_MIME_TYPE, IPA_MIME_TYPE
from buildqueue.db.lease import Lease
from buildqueue.db.models import utcnow
from buildqueue.types.job import BuildContext
from buildqueue.worker.handlers import (
    BuildError,
    get_handler,
    handle_failing_build,
    handle_flaky_build,
    handle_mock_build,
    handle_mock_ios_build,
    list_handlers,
    safe_package_name,
)


def make_context(artifacts_dir: Path, attempt: int = 1) -> BuildContext:
    job_id = uuid4()
    return BuildContext(
        job_id=job_id,
        app_id=uuid4(),
        owner_id=uuid4(),
        attempt=attempt,
        max_attempts=3,
        lease=Lease(
            job_id=job_id,
            lock_token="test-worker:token",
            locked_at=utcnow(),
            ttl=timedelta(minutes=30),
        ),
        package_name="com.buildqueue.test",
        version_code=1,
        app_name="Corner Bakery",
        platform="android",
        artifacts_dir=artifacts_dir,
    )


class TestBuildHandlers:
    """Tests for build handlers."""

    @pytest.fixture
    def build_context(self, tmp_path: Path) -> BuildContext:
        """Create a test build context."""
        return make_context(tmp_path)

    def test_list_handlers(self):
        """Test listing registered handlers."""
        handlers = list_handlers()

        assert "mock" in handlers
        assert "flaky" in handlers
        assert "mock_ios" in handlers
        assert "failing" in handlers

    def test_get_handler(self):
        """Test getting a handler by name."""
        assert get_handler("mock") is handle_mock_build

    def test_get_nonexistent_handler(self):
        """Test getting a non-existent handler."""
        assert get_handler("nonexistent") is None

    async def test_mock_build_writes_artifact(self, build_context: BuildContext, tmp_path: Path):
        """Test the mock build writes an artifact keyed by app and job."""
        result = await handle_mock_build(build_context)

        expected = f"{build_context.app_id}/{build_context.job_id}.apk"
        assert result.artifact_path == expected
        assert result.artifact_mime == APK_MIME_TYPE

        artifact = tmp_path / expected
        assert artifact.exists()
        assert artifact.stat().st_size == result.artifact_size
        assert artifact.read_text().startswith("BUILDQUEUE-MOCK-APK")
        assert "Corner Bakery" in result.logs

    async def test_mock_build_is_idempotent(self, build_context: BuildContext, tmp_path: Path):
        """Test rebuilding the same job overwrites its artifact."""
        first = await handle_mock_build(build_context)
        second = await handle_mock_build(build_context)

        assert first.artifact_path == second.artifact_path
        assert len(list((tmp_path / str(build_context.app_id)).iterdir())) == 1

    async def test_mock_ios_build(self, build_context: BuildContext, tmp_path: Path):
        result = await handle_mock_ios_build(build_context)

        assert result.artifact_path == f"{build_context.app_id}/{build_context.job_id}.ipa"
        assert result.artifact_mime == IPA_MIME_TYPE
        assert (build_context.output_dir / f"{build_context.job_id}.ipa").exists()
        assert (tmp_path / result.artifact_path).read_text().startswith("BUILDQUEUE-MOCK-IPA")

    async def test_flaky_build(self, tmp_path: Path):
        """Test the flaky build fails first and succeeds on retry."""
        with pytest.raises(BuildError) as exc_info:
            await handle_flaky_build(make_context(tmp_path, attempt=1))
        assert exc_info.value.logs

        result = await handle_flaky_build(make_context(tmp_path, attempt=2))
        assert result.artifact_size > 0

    async def test_failing_build(self, build_context: BuildContext):
        """Test the failing build always raises."""
        with pytest.raises(BuildError, match="Intentional failure on attempt 1"):
            await handle_failing_build(build_context)


class TestBuildContext:
    """Tests for BuildContext helpers."""

    def test_last_attempt(self, tmp_path: Path):
        assert not make_context(tmp_path, attempt=2).is_last_attempt
        assert make_context(tmp_path, attempt=3).is_last_attempt

    def test_output_dir_is_per_app(self, tmp_path: Path):
        context = make_context(tmp_path)

        assert context.output_dir == tmp_path / str(context.app_id)


class TestSafePackageName:
    """Tests for package name derivation."""

    def test_letter_prefix_kept(self):
        app_id = UUID("abcdef12-0000-0000-0000-000000000000")

        assert safe_package_name(app_id) == "com.buildqueue.abcdef12"

    def test_digit_prefix_gets_letter(self):
        app_id = UUID("12345678-0000-0000-0000-000000000000")

        assert safe_package_name(app_id) == "com.buildqueue.a1234567"

    def test_custom_prefix(self):
        app_id = UUID("abcdef12-0000-0000-0000-000000000000")

        assert safe_package_name(app_id, prefix="io.example") == "io.example.abcdef12"
