"""
Integration tests for the API endpoints.
"""

from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from buildqueue.api.auth import ROLE_OPERATOR, create_access_token, decode_token, payment_signature
from buildqueue.config import get_settings
from buildqueue.constants import AppStatus, BuildJobStatus, PaymentStatus
from buildqueue.db.models import App, BuildJob, Payment, User
from buildqueue.db.payments import PaymentRepository
from buildqueue.db.repository import BuildJobRepository


class TestBuildAPI:
    """Integration tests for build endpoints."""

    @pytest.fixture
    def stranger_headers(self) -> dict[str, str]:
        token = create_access_token(owner_id=uuid4())
        return {"Authorization": f"Bearer {token}"}

    @pytest_asyncio.fixture
    async def queued_job(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_app: App,
    ) -> dict:
        """Request a build through the API."""
        response = await client.post(f"/v1/apps/{test_app.id}/builds", headers=auth_headers)
        return response.json()

    async def test_enqueue_build(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_app: App,
        db_session: AsyncSession,
    ):
        """Test requesting a build queues a job and marks the app processing."""
        response = await client.post(f"/v1/apps/{test_app.id}/builds", headers=auth_headers)

        assert response.status_code == 202
        data = response.json()
        assert data["app_id"] == str(test_app.id)
        assert data["status"] == BuildJobStatus.QUEUED

        job = await BuildJobRepository(db_session).get_job(UUID(data["id"]))
        assert job.owner_id == test_app.owner_id
        assert job.attempts == 0

        app = await db_session.get(App, test_app.id, populate_existing=True)
        assert app.status == AppStatus.PROCESSING

    async def test_enqueue_unauthenticated(self, client: AsyncClient, test_app: App):
        response = await client.post(f"/v1/apps/{test_app.id}/builds")

        assert response.status_code in (401, 403)

    async def test_enqueue_foreign_app(
        self,
        client: AsyncClient,
        stranger_headers: dict[str, str],
        test_app: App,
    ):
        """Test users cannot build apps they do not own."""
        response = await client.post(f"/v1/apps/{test_app.id}/builds", headers=stranger_headers)

        assert response.status_code == 403

    async def test_enqueue_unknown_app(self, client: AsyncClient, auth_headers: dict[str, str]):
        response = await client.post(f"/v1/apps/{uuid4()}/builds", headers=auth_headers)

        assert response.status_code == 404

    async def test_operator_can_enqueue(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        test_app: App,
    ):
        """Test an operator build is still owned by the app owner."""
        response = await client.post(f"/v1/apps/{test_app.id}/builds", headers=operator_headers)

        assert response.status_code == 202

        job = await client.get(f"/v1/build-jobs/{response.json()['id']}", headers=operator_headers)
        assert job.json()["owner_id"] == str(test_app.owner_id)

    async def test_list_builds(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_app: App,
        queued_job: dict,
    ):
        """Test listing returns every job of the app."""
        second = await client.post(f"/v1/apps/{test_app.id}/builds", headers=auth_headers)

        response = await client.get(f"/v1/apps/{test_app.id}/builds", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert {job["id"] for job in data["jobs"]} == {queued_job["id"], second.json()["id"]}
        assert all(job["exhausted"] is False for job in data["jobs"])

    async def test_list_builds_foreign_app(
        self,
        client: AsyncClient,
        stranger_headers: dict[str, str],
        test_app: App,
    ):
        response = await client.get(f"/v1/apps/{test_app.id}/builds", headers=stranger_headers)

        assert response.status_code == 403

    async def test_get_build_job(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        queued_job: dict,
    ):
        """Test retrieving a job by ID."""
        response = await client.get(f"/v1/build-jobs/{queued_job['id']}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == queued_job["id"]
        assert data["status"] == BuildJobStatus.QUEUED
        assert data["locked_at"] is None
        assert "lock_token" not in data

    async def test_get_build_job_not_found(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ):
        response = await client.get(f"/v1/build-jobs/{uuid4()}", headers=auth_headers)

        assert response.status_code == 404

    async def test_get_foreign_build_job(
        self,
        client: AsyncClient,
        stranger_headers: dict[str, str],
        queued_job: dict,
    ):
        response = await client.get(f"/v1/build-jobs/{queued_job['id']}", headers=stranger_headers)

        assert response.status_code == 403

    async def test_stats(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        queued_job: dict,
    ):
        response = await client.get("/v1/build-jobs/stats", headers=operator_headers)

        assert response.status_code == 200
        assert response.json() == {"stats": {"queued": 1}, "exhausted": 0}

    async def test_stats_requires_operator(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ):
        response = await client.get("/v1/build-jobs/stats", headers=auth_headers)

        assert response.status_code == 403


class TestRetryAPI:
    """Integration tests for the operator retry of exhausted jobs."""

    @pytest_asyncio.fixture
    async def exhausted_job(self, initialized_db: None, db_session: AsyncSession, test_app: App):
        """A job that spent its retry budget while queued."""
        repo = BuildJobRepository(db_session, max_attempts=get_settings().max_build_attempts)
        job = await repo.enqueue(owner_id=test_app.owner_id, app_id=test_app.id)
        await db_session.commit()
        for _ in range(repo.max_attempts):
            claimed = await repo.claim_next("w1")
            await repo.requeue(job.id, claimed.lock_token)
        await db_session.commit()
        return job

    async def test_retry_exhausted(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        exhausted_job: BuildJob,
        db_session: AsyncSession,
    ):
        """Test an operator retry resets attempts and requeues the job."""
        listing = await client.get(
            f"/v1/apps/{exhausted_job.app_id}/builds", headers=operator_headers
        )
        assert listing.json()["jobs"][0]["exhausted"] is True

        response = await client.post(
            f"/v1/build-jobs/{exhausted_job.id}/retry", headers=operator_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == BuildJobStatus.QUEUED
        assert data["attempts"] == 0

        assert await BuildJobRepository(db_session).claim_next("w2") is not None

    async def test_retry_with_budget_left(
        self,
        client: AsyncClient,
        operator_headers: dict[str, str],
        auth_headers: dict[str, str],
        test_app: App,
    ):
        queued = await client.post(f"/v1/apps/{test_app.id}/builds", headers=auth_headers)

        response = await client.post(
            f"/v1/build-jobs/{queued.json()['id']}/retry", headers=operator_headers
        )

        assert response.status_code == 409

    async def test_retry_unknown_job(self, client: AsyncClient, operator_headers: dict[str, str]):
        response = await client.post(f"/v1/build-jobs/{uuid4()}/retry", headers=operator_headers)

        assert response.status_code == 404

    async def test_retry_requires_operator(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        exhausted_job: BuildJob,
    ):
        response = await client.post(
            f"/v1/build-jobs/{exhausted_job.id}/retry", headers=auth_headers
        )

        assert response.status_code == 403


class TestPaymentCallbackAPI:
    """Integration tests for the payment provider callback."""

    @pytest_asyncio.fixture
    async def payment(self, initialized_db: None, db_session: AsyncSession, test_user: User):
        payment = await PaymentRepository(db_session).create_payment(
            user_id=test_user.id,
            amount=49900,
            plan="pro",
            provider_order_id="order_test_1",
        )
        await db_session.commit()
        return payment

    def _body(self, status: str, provider_payment_id: str = "pay_test_1", signature=None) -> dict:
        return {
            "status": status,
            "provider_payment_id": provider_payment_id,
            "signature": signature or payment_signature("order_test_1", provider_payment_id),
        }

    async def test_completed_callback(
        self,
        client: AsyncClient,
        payment: Payment,
        test_user: User,
        db_session: AsyncSession,
    ):
        """Test a completed callback settles the payment and grants the plan."""
        response = await client.post(
            f"/v1/payments/{payment.id}/callback", json=self._body("completed")
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == PaymentStatus.COMPLETED
        assert data["updated"] is True
        assert data["entitlements_applied"] is True

        user = await db_session.get(User, test_user.id, populate_existing=True)
        assert user.plan == "pro"
        assert user.remaining_rebuilds == 3

    async def test_duplicate_callback(
        self,
        client: AsyncClient,
        payment: Payment,
        test_user: User,
        db_session: AsyncSession,
    ):
        """Test a duplicate callback is acknowledged without a second grant."""
        url = f"/v1/payments/{payment.id}/callback"
        await client.post(url, json=self._body("completed"))

        response = await client.post(url, json=self._body("completed"))

        assert response.status_code == 200
        data = response.json()
        assert data["updated"] is False
        assert data["entitlements_applied"] is False

        user = await db_session.get(User, test_user.id, populate_existing=True)
        assert user.remaining_rebuilds == 3

    async def test_late_failure_does_not_revert(
        self,
        client: AsyncClient,
        payment: Payment,
    ):
        url = f"/v1/payments/{payment.id}/callback"
        await client.post(url, json=self._body("completed"))

        response = await client.post(url, json=self._body("failed"))

        assert response.status_code == 200
        assert response.json()["status"] == PaymentStatus.COMPLETED
        assert response.json()["updated"] is False

    async def test_failed_callback(
        self,
        client: AsyncClient,
        payment: Payment,
        test_user: User,
        db_session: AsyncSession,
    ):
        response = await client.post(
            f"/v1/payments/{payment.id}/callback", json=self._body("failed")
        )

        assert response.status_code == 200
        assert response.json()["status"] == PaymentStatus.FAILED
        assert response.json()["entitlements_applied"] is False

        user = await db_session.get(User, test_user.id, populate_existing=True)
        assert user.plan is None

    async def test_bad_signature(
        self,
        client: AsyncClient,
        payment: Payment,
        db_session: AsyncSession,
    ):
        """Test an unsigned callback changes nothing."""
        response = await client.post(
            f"/v1/payments/{payment.id}/callback",
            json=self._body("completed", signature="0" * 64),
        )

        assert response.status_code == 400

        stored = await PaymentRepository(db_session).get_payment(payment.id)
        assert stored.status == PaymentStatus.PENDING

    async def test_pending_status_rejected(self, client: AsyncClient, payment: Payment):
        response = await client.post(
            f"/v1/payments/{payment.id}/callback", json=self._body("pending")
        )

        assert response.status_code == 422

    async def test_unknown_payment(self, client: AsyncClient):
        response = await client.post(
            f"/v1/payments/{uuid4()}/callback", json=self._body("completed")
        )

        assert response.status_code == 404


class TestAuthAPI:
    """Integration tests for token issuance."""

    async def test_user_token(self, client: AsyncClient):
        owner_id = uuid4()
        response = await client.post(
            "/auth/token", json={"api_key": "user-key", "owner_id": str(owner_id)}
        )

        assert response.status_code == 200
        token = decode_token(response.json()["access_token"])
        assert token.owner_id == owner_id
        assert token.role != ROLE_OPERATOR

    async def test_operator_token(self, client: AsyncClient):
        response = await client.post(
            "/auth/token",
            json={"api_key": get_settings().api_operator_key, "owner_id": str(uuid4())},
        )

        assert response.status_code == 200
        assert decode_token(response.json()["access_token"]).role == ROLE_OPERATOR

    async def test_empty_key(self, client: AsyncClient):
        response = await client.post(
            "/auth/token", json={"api_key": "", "owner_id": str(uuid4())}
        )

        assert response.status_code == 401


class TestHealthAPI:
    """Integration tests for health endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Test health check endpoint."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"

    async def test_readiness_check(self, client: AsyncClient):
        """Test readiness check endpoint."""
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"ready": True}

    async def test_liveness_check(self, client: AsyncClient):
        """Test liveness check endpoint."""
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json() == {"alive": True}

    async def test_metrics_endpoint(self, client: AsyncClient):
        """Test Prometheus metrics endpoint."""
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "build_jobs_enqueued" in response.text
        assert "lease_conflicts" in response.text
