"""
Locust load testing for the build queue API.

The queue has no app-creation endpoint, so seed apps (and pending payments
for the callback user) in the target database first and pass their ids in:

    LOAD_TEST_APP_IDS=<uuid>,<uuid> \
    LOAD_TEST_OPERATOR_KEY=<API_OPERATOR_KEY> \
    LOAD_TEST_PAYMENTS=<payment_uuid>:<provider_order_id>,... \
    PAYMENT_WEBHOOK_SECRET=<secret> \
    locust -f tests/load/locustfile.py --host=http://localhost:8000

Or headless:
    locust -f tests/load/locustfile.py --host=http://localhost:8000 \
        --headless -u 100 -r 10 --run-time 5m
"""

import os
import random
import uuid

from locust import HttpUser, between, task

from buildqueue.api.auth import payment_signature

APP_IDS = [a for a in os.getenv("LOAD_TEST_APP_IDS", "").split(",") if a]
OPERATOR_KEY = os.getenv("LOAD_TEST_OPERATOR_KEY", "operator-key-change-in-production")
PAYMENTS = [
    tuple(p.split(":", 1)) for p in os.getenv("LOAD_TEST_PAYMENTS", "").split(",") if ":" in p
]


class OperatorSession(HttpUser):
    """Base user holding an operator token, so any seeded app can be built."""

    abstract = True

    def on_start(self):
        """Called when a user starts."""
        self.token = self._get_token()

    def _get_token(self) -> str:
        response = self.client.post(
            "/auth/token",
            json={"api_key": OPERATOR_KEY, "owner_id": str(uuid.uuid4())},
        )
        if response.status_code == 200:
            return response.json()["access_token"]
        return ""

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


class BuildRequestUser(OperatorSession):
    """
    Simulated traffic against the build endpoints.

    - Build requests (most common)
    - Job status checks
    - Per-app listing
    - Stats queries
    """

    wait_time = between(0.5, 2)

    def on_start(self):
        super().on_start()
        self.created_job_ids: list[str] = []

    @task(10)
    def request_build(self):
        """Queue a build of a seeded app."""
        if not APP_IDS:
            return

        response = self.client.post(
            f"/v1/apps/{random.choice(APP_IDS)}/builds",
            headers=self._headers(),
            name="/v1/apps/{app_id}/builds [POST]",
        )

        if response.status_code == 202:
            self.created_job_ids.append(response.json()["id"])
            # Keep only recent job IDs
            if len(self.created_job_ids) > 100:
                self.created_job_ids = self.created_job_ids[-100:]

    @task(5)
    def get_job_status(self):
        """Check status of a previously queued job."""
        if not self.created_job_ids:
            return

        self.client.get(
            f"/v1/build-jobs/{random.choice(self.created_job_ids)}",
            headers=self._headers(),
            name="/v1/build-jobs/{job_id} [GET]",
        )

    @task(3)
    def list_builds(self):
        if not APP_IDS:
            return

        self.client.get(
            f"/v1/apps/{random.choice(APP_IDS)}/builds",
            headers=self._headers(),
            name="/v1/apps/{app_id}/builds [GET]",
        )

    @task(2)
    def get_stats(self):
        self.client.get(
            "/v1/build-jobs/stats",
            headers=self._headers(),
            name="/v1/build-jobs/stats [GET]",
        )

    @task(1)
    def health_check(self):
        """Check API health."""
        self.client.get("/health", name="/health [GET]")


class BurstBuildUser(OperatorSession):
    """
    User that requests builds in bursts so workers race on a deep queue.
    """

    wait_time = between(5, 10)

    @task
    def burst_request(self):
        if not APP_IDS:
            return

        for _ in range(random.randint(10, 50)):
            self.client.post(
                f"/v1/apps/{random.choice(APP_IDS)}/builds",
                headers=self._headers(),
                name="/v1/apps/{app_id}/builds [POST] (burst)",
            )


class DuplicateCallbackUser(HttpUser):
    """
    User that replays provider callbacks for the same payments.

    Every seeded payment must settle exactly once, however often its
    callback arrives.
    """

    wait_time = between(0.1, 1)

    def on_start(self):
        self.settled: set[str] = set()

    @task
    def send_callback(self):
        if not PAYMENTS:
            return

        payment_id, order_id = random.choice(PAYMENTS)
        provider_payment_id = f"pay_{payment_id[:8]}"

        with self.client.post(
            f"/v1/payments/{payment_id}/callback",
            json={
                "status": "completed",
                "provider_payment_id": provider_payment_id,
                "signature": payment_signature(order_id, provider_payment_id),
            },
            name="/v1/payments/{payment_id}/callback [POST]",
            catch_response=True,
        ) as response:
            if response.status_code != 200:
                response.failure(f"Unexpected status {response.status_code}")
                return

            if response.json()["updated"]:
                if payment_id in self.settled:
                    response.failure("Payment settled twice!")
                    return
                self.settled.add(payment_id)
            response.success()
