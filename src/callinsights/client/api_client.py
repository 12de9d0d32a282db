"""
Client module for communicating with the call enrichment API server.

This module provides a simple interface for scripts and tools to:
- Upload calls and edit transcripts
- Request enrichment jobs and poll them until they finish
- Enrich many calls one after another (bulk runs)
- Search calls and score QA criteria
"""

import logging
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests
from requests.exceptions import ConnectionError, RequestException

from ..config import ConfigManager

logger = logging.getLogger(__name__)


def _error_detail(response: requests.Response) -> str:
    try:
        return response.json().get("error", response.text)
    except ValueError:
        return response.text


class APIClient:
    """Client for communicating with the call enrichment API server."""

    def __init__(self, base_url: Optional[str] = None, user_id: str = "", timeout: int = 30):
        """
        Initialize the API client.

        Args:
            base_url: Base URL of the API server (API_BASE_URL)
            user_id: Sent as X-User-Id on every request
            timeout: Default request timeout in seconds
        """
        self.base_url = ConfigManager.get("API_BASE_URL", base_url).rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        if user_id:
            self.session.headers["X-User-Id"] = user_id

    def _request(self, method: str, path: str, action: str, **kwargs) -> Dict[str, Any]:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, f"{self.base_url}{path}", **kwargs)
        except RequestException as e:
            raise RequestException(f"{action} failed: {e}")

        if response.status_code >= 400:
            raise RequestException(
                f"{action} failed: {response.status_code} {_error_detail(response)}", response=response
            )
        return response.json()

    def health_check(self) -> Dict[str, Any]:
        """
        Check if the API server is healthy.

        Returns:
            Dictionary containing health status information

        Raises:
            ConnectionError: If unable to connect to the server
        """
        try:
            return self._request("GET", "/health", "Health check")
        except RequestException as e:
            raise ConnectionError(f"Unable to connect to API server: {e}")

    def upload_call(
        self,
        file_path: str,
        call_time: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        language: Optional[str] = None,
        timeout: int = 300,
    ) -> Dict[str, Any]:
        """
        Upload a call recording.

        Args:
            file_path: Path to the audio file to upload
            call_time: When the call took place (ISO 8601)
            duration_seconds: Call length
            language: Spoken language
            timeout: Request timeout in seconds

        Returns:
            The new call

        Raises:
            FileNotFoundError: If the file doesn't exist
            RequestException: If the upload fails
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Audio file not found: {file_path}")

        data = {}
        if call_time:
            data["call_time"] = call_time
        if duration_seconds is not None:
            data["duration_seconds"] = str(duration_seconds)
        if language:
            data["language"] = language

        # Use context manager to ensure file is properly closed
        with open(file_path, "rb") as audio_file:
            files = {"file": (file_path.name, audio_file)}
            return self._request("POST", "/calls", "Upload", files=files, data=data, timeout=timeout)

    def import_transcript(self, text: str, **fields: Any) -> Dict[str, Any]:
        """Create a call from an existing transcript (call_time, duration_seconds, language optional)."""
        return self._request("POST", "/calls", "Import", json={"text": text, **fields})

    def get_call(self, call_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/calls/{call_id}", "Get call")

    def edit_transcript(self, call_id: str, text: str) -> Dict[str, Any]:
        return self._request("PUT", f"/calls/{call_id}/transcript", "Edit transcript", json={"text": text})

    def enrich(
        self,
        call_id: str,
        job_type: str,
        force_regenerate: bool = False,
        content_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Request enrichment of a call.

        Returns:
            job_id, status, cached and artifact_ref
        """
        payload: Dict[str, Any] = {"job_type": job_type, "force_regenerate": force_regenerate}
        if content_type:
            payload["content_type"] = content_type
        return self._request("POST", f"/calls/{call_id}/enrich", "Enrich", json=payload)

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """
        Get the status of an enrichment job.

        Args:
            job_id: Unique identifier for the job

        Returns:
            Dictionary containing job status and metadata

        Raises:
            RequestException: If the request fails
        """
        return self._request("GET", f"/jobs/{job_id}", "Get job status")

    def list_jobs(
        self, status_filter: Optional[str] = None, entity_id: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> Dict[str, Any]:
        """
        List jobs.

        Args:
            status_filter: Filter by status (pending, processing, completed, failed)
            entity_id: Filter by call
            limit: Maximum number of jobs to return
            offset: Offset for pagination

        Returns:
            Dictionary containing list of jobs and pagination info
        """
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if status_filter:
            params["status"] = status_filter
        if entity_id:
            params["entity_id"] = entity_id
        return self._request("GET", "/jobs", "List jobs", params=params)

    def wait_for_completion(
        self, job_id: str, poll_interval: Optional[float] = None, timeout: int = 3600
    ) -> Dict[str, Any]:
        """
        Poll a job until it completes.

        Args:
            job_id: Unique identifier for the job
            poll_interval: Time to wait between status checks (POLL_INTERVAL_SECONDS)
            timeout: Maximum time to wait (seconds)

        Returns:
            The completed job

        Raises:
            TimeoutError: If the job doesn't complete within the timeout
            RequestException: If the job fails or any API call fails
        """
        poll_interval = ConfigManager.get_float("POLL_INTERVAL_SECONDS", poll_interval)
        start_time = time.time()

        while time.time() - start_time < timeout:
            status_info = self.get_job_status(job_id)
            status = status_info.get("status")

            if status == "completed":
                return status_info
            elif status == "failed":
                error = status_info.get("error") or "Unknown error"
                raise RequestException(f"Job failed: {error}")

            time.sleep(poll_interval)

        raise TimeoutError(f"Job {job_id} did not complete within {timeout} seconds")

    def bulk_enrich(
        self,
        call_ids: Iterable[str],
        job_type: str,
        delay: Optional[float] = None,
        force_regenerate: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Request enrichment for many calls, one request at a time.

        Requests start ``delay`` seconds apart (BULK_DELAY_SECONDS) to stay
        under provider rate limits. A failed request is recorded and the run
        continues.

        Returns:
            One outcome per call: call_id, ok, and either the enrich response or the error
        """
        delay = ConfigManager.get_float("BULK_DELAY_SECONDS", delay)
        outcomes = []

        for index, call_id in enumerate(call_ids):
            if index and delay > 0:
                time.sleep(delay)
            try:
                result = self.enrich(call_id, job_type, force_regenerate=force_regenerate)
                outcomes.append({"call_id": call_id, "ok": True, **result})
            except RequestException as e:
                logger.warning(f"Bulk {job_type} failed for call {call_id}: {e}")
                outcomes.append({"call_id": call_id, "ok": False, "error": str(e)})

        succeeded = sum(1 for outcome in outcomes if outcome["ok"])
        logger.info(f"Bulk {job_type}: {succeeded}/{len(outcomes)} requests accepted")
        return outcomes

    def search(
        self,
        query: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"query": query}
        if filters:
            payload["filters"] = filters
        if limit is not None:
            payload["limit"] = limit
        if threshold is not None:
            payload["threshold"] = threshold
        return self._request("POST", "/search", "Search", json=payload)

    def find_similar(self, call_id: str, limit: int = 10, threshold: Optional[float] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": limit}
        if threshold is not None:
            params["threshold"] = threshold
        return self._request("GET", f"/calls/{call_id}/similar", "Find similar", params=params)

    def score_qa(self, criteria: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self._request("POST", "/qa/score", "QA scoring", json={"criteria": criteria})

    def get_qa_criteria(self) -> Dict[str, Any]:
        return self._request("GET", "/qa/criteria", "Get QA criteria")

    def get_cache_stats(self) -> Dict[str, Any]:
        return self._request("GET", "/cache/stats", "Get cache stats")


# Convenience function for quick enrichment
def enrich_and_wait(
    call_id: str,
    job_type: str,
    user_id: str,
    api_url: Optional[str] = None,
    poll_interval: Optional[float] = None,
    timeout: int = 3600,
) -> Dict[str, Any]:
    """
    Request enrichment and wait until the job finishes.

    Returns:
        The completed job (immediately, for a cache hit)
    """
    client = APIClient(api_url, user_id=user_id)
    result = client.enrich(call_id, job_type)
    if result.get("cached"):
        return client.get_job_status(result["job_id"])
    return client.wait_for_completion(result["job_id"], poll_interval, timeout)
