"""HTTP client for communicating with the RunWarden daemon API."""

from __future__ import annotations

import httpx

from runwarden.config import load_config


class APIClient:
    """Client for RunWarden daemon API."""

    def __init__(self, base_url: str | None = None, token: str | None = None):
        """Initialize the API client.

        Args:
            base_url: Base URL for the API (default: from config)
            token: Authentication token (default: from config)
        """
        if base_url is None:
            config = load_config()
            base_url = f"http://{config.daemon.host}:{config.daemon.port}"
            if config.api.auth.enabled and token is None:
                token = config.api.auth.token

        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "APIClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def is_daemon_running(self) -> bool:
        """Check if the daemon is running and responding."""
        try:
            response = self._get_client().get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    def health(self) -> dict:
        """Get daemon health status."""
        response = self._get_client().get("/health")
        response.raise_for_status()
        return response.json()

    # Runbooks

    def list_runbooks(self) -> list[dict]:
        response = self._get_client().get("/api/v1/runbooks")
        response.raise_for_status()
        return response.json()["runbooks"]

    def get_runbook(self, runbook_id: str) -> dict | None:
        response = self._get_client().get(f"/api/v1/runbooks/{runbook_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def save_runbook(self, runbook_id: str, definition: dict) -> dict:
        """Create the runbook, or update it if it already exists."""
        client = self._get_client()
        if self.get_runbook(runbook_id) is None:
            response = client.post("/api/v1/runbooks", json={**definition, "id": runbook_id})
        else:
            response = client.put(f"/api/v1/runbooks/{runbook_id}", json=definition)
        response.raise_for_status()
        return response.json()

    def execute_runbook(self, runbook_id: str, trigger_info: str | None = None) -> dict:
        """Start a runbook execution."""
        response = self._get_client().post(
            f"/api/v1/runbooks/{runbook_id}/execute",
            json={"trigger_info": trigger_info},
        )
        response.raise_for_status()
        return response.json()

    # Executions

    def list_executions(self, runbook_id: str | None = None, limit: int = 20) -> list[dict]:
        params: dict = {"limit": limit}
        if runbook_id:
            params["runbook_id"] = runbook_id
        response = self._get_client().get("/api/v1/executions", params=params)
        response.raise_for_status()
        return response.json()["executions"]

    def get_execution(self, execution_id: str) -> dict:
        response = self._get_client().get(f"/api/v1/executions/{execution_id}")
        response.raise_for_status()
        return response.json()

    def control_execution(self, execution_id: str, action: str) -> dict:
        """Pause, resume or cancel an execution."""
        response = self._get_client().post(f"/api/v1/executions/{execution_id}/{action}")
        response.raise_for_status()
        return response.json()

    # Self-healing

    def list_pending_approvals(self) -> list[dict]:
        response = self._get_client().get("/api/v1/healing/executions", params={"pending": "true"})
        response.raise_for_status()
        return response.json()["executions"]

    def decide_healing_execution(self, execution_id: str, approve: bool) -> dict:
        """Approve or reject a self-healing execution."""
        action = "approve" if approve else "reject"
        response = self._get_client().post(f"/api/v1/healing/executions/{execution_id}/{action}")
        response.raise_for_status()
        return response.json()
