"""API Endpoint Wrappers - Typed API calls"""

from typing import Any

import httpx

from ..utils.config_manager import config
from .base import APIClient, JobQueueError

__all__ = ["JobQueueClient", "JobQueueError"]


class JobQueueClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = headers or api_config.get("headers", {})

        self.api = APIClient(
            base_url=final_base_url,
            timeout=int(api_config.get("timeout", 30)),
            headers=final_headers,
            transport=transport,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Job Endpoints
    def submit_job(
        self,
        type: str,
        payload: dict[str, Any] | None = None,
        job_id: str | None = None,
        priority: int | None = None,
        max_attempts: int | None = None,
        delay_ms: int | None = None,
        backoff_type: str | None = None,
        backoff_delay: int | None = None,
    ) -> dict[str, Any]:
        """Submit a job"""
        data: dict[str, Any] = {"type": type, "payload": payload or {}}
        optional = {
            "job_id": job_id,
            "priority": priority,
            "max_attempts": max_attempts,
            "delay_ms": delay_ms,
            "backoff_type": backoff_type,
            "backoff_delay": backoff_delay,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return self.api.post("/jobs", data)

    def list_jobs(
        self,
        status: str | None = None,
        type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        """Get a job by its job ID"""
        return self.api.get(f"/jobs/{job_id}")

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        """Cancel a job"""
        return self.api.post(f"/jobs/{job_id}/cancel")

    def get_job_stats(self) -> dict[str, Any]:
        """Get job statistics"""
        return self.api.get("/jobs/stats/overview")

    def cleanup_jobs(self, retention_days: int | None = None) -> dict[str, Any]:
        """Delete old completed and cancelled jobs"""
        params = {"retention_days": retention_days} if retention_days else None
        return self.api.post("/jobs/cleanup", params=params)

    # Dead Letter Endpoints
    def list_dead_letters(
        self,
        status: str | None = None,
        severity: str | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List dead letters with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if severity:
            params["severity"] = severity
        if job_type:
            params["job_type"] = job_type
        return self.api.get("/dead-letters", params)

    def get_dead_letter(self, dead_letter_id: str) -> dict[str, Any]:
        """Get a dead letter by ID"""
        return self.api.get(f"/dead-letters/{dead_letter_id}")

    def get_dead_letter_stats(self) -> dict[str, Any]:
        """Get dead letter statistics"""
        return self.api.get("/dead-letters/stats/overview")

    def get_stale_dead_letters(self, days: int | None = None) -> dict[str, Any]:
        """List open dead letters older than the stale threshold"""
        params = {"days": days} if days else None
        return self.api.get("/dead-letters/stale", params)

    def reprocess_dead_letter(
        self, dead_letter_id: str, resubmit: bool = False
    ) -> dict[str, Any]:
        """Reprocess a dead letter"""
        params = {"resubmit": "true"} if resubmit else None
        return self.api.post(f"/dead-letters/{dead_letter_id}/reprocess", params=params)

    def reprocess_batch(self, job_type: str, max_entries: int = 10) -> dict[str, Any]:
        """Reprocess dead letters of a job type"""
        data = {"job_type": job_type, "max_entries": max_entries}
        return self.api.post("/dead-letters/reprocess-batch", data)

    def resolve_dead_letter(self, dead_letter_id: str, resolution: str) -> dict[str, Any]:
        """Resolve a dead letter"""
        data = {"resolution": resolution}
        return self.api.post(f"/dead-letters/{dead_letter_id}/resolve", data)

    def ignore_dead_letter(self, dead_letter_id: str, reason: str) -> dict[str, Any]:
        """Ignore a dead letter"""
        data = {"reason": reason}
        return self.api.post(f"/dead-letters/{dead_letter_id}/ignore", data)

    def investigate_dead_letter(self, dead_letter_id: str) -> dict[str, Any]:
        """Mark a dead letter as under investigation"""
        return self.api.post(f"/dead-letters/{dead_letter_id}/investigate")

    def reopen_dead_letter(self, dead_letter_id: str) -> dict[str, Any]:
        """Reopen a dead letter"""
        return self.api.post(f"/dead-letters/{dead_letter_id}/reopen")

    def cleanup_dead_letters(self, retention_days: int | None = None) -> dict[str, Any]:
        """Delete old resolved and ignored dead letters"""
        params = {"retention_days": retention_days} if retention_days else None
        return self.api.post("/dead-letters/cleanup", params=params)
