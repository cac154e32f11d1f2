"""HTTP adapter for an Orbit backend (local daemon or remote host)."""

import logging
from typing import Any, Dict, Optional, Union

import httpx
from pydantic import ValidationError

from .models import (
    DispatchResult,
    GlobalAction,
    JobStatus,
    ProjectList,
    ProjectRow,
    Service,
    ServiceAction,
    ServiceType,
    slugify,
)

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
    "X-Requested-With": "XMLHttpRequest",
}


class GatewayError(Exception):
    """A read call against the backend failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def normalize_services(payload: Any) -> Dict[str, Service]:
    """Collapse the ``/status`` response shapes into one service map.

    Three shapes are accepted for compatibility with older backends:
    ``{"success": true, "data": {"services": ...}}``, ``{"services": ...}``
    and ``{"data": {"services": ...}}``.
    """
    if not isinstance(payload, dict):
        raise GatewayError("Unexpected status payload")

    raw = payload.get("services")
    if raw is None and isinstance(payload.get("data"), dict):
        raw = payload["data"].get("services")
    if raw is None:
        raise GatewayError("Status payload has no services")

    if isinstance(raw, list):
        raw = {item.get("name"): item for item in raw if isinstance(item, dict) and item.get("name")}
    if not isinstance(raw, dict):
        raise GatewayError("Unexpected services payload")

    services: Dict[str, Service] = {}
    for name, data in raw.items():
        data = dict(data or {})
        data["name"] = name
        if data.get("type") not in ("docker", "host"):
            data.pop("type", None)
        try:
            services[name] = Service.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Skipping malformed service {name}: {e}")
    return services


class BackendGateway:
    """Async client for the Orbit HTTP API.

    Read calls raise :class:`GatewayError`. Write calls never raise for
    transport or backend failures; they return a failed :class:`DispatchResult`
    so callers can pick the wording shown to the user. Cancellation always
    propagates.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout, headers=DEFAULT_HEADERS)

    async def __aenter__(self) -> "BackendGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _get_json(self, path: str) -> Any:
        try:
            response = await self.client.get(self._url(path))
        except httpx.HTTPError as e:
            raise GatewayError(f"GET {path} failed: {e}") from e

        if response.status_code >= 400:
            raise GatewayError(
                f"GET {path} returned {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"GET {path} returned invalid JSON") from e

    async def _send(self, method: str, path: str, **kwargs) -> DispatchResult:
        try:
            response = await self.client.request(method, self._url(path), **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            return DispatchResult(success=False, error=f"Could not reach backend: {e}")

        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            if response.is_success:
                return DispatchResult(success=True)
            return DispatchResult(success=False, error=f"HTTP {response.status_code}")

        body.setdefault("success", response.is_success)
        if not response.is_success:
            body["success"] = False
            body.setdefault("error", body.get("message") or f"HTTP {response.status_code}")
        try:
            return DispatchResult.model_validate(body)
        except ValidationError as e:
            return DispatchResult(success=False, error=f"Unexpected response: {e}")

    # Services

    async def fetch_status(self) -> Dict[str, Service]:
        """Full service snapshot for the environment."""
        return normalize_services(await self._get_json("status"))

    async def dispatch_service_action(
        self,
        service: str,
        action: Union[ServiceAction, str],
        service_type: Union[ServiceType, str] = ServiceType.DOCKER,
    ) -> DispatchResult:
        """Start, stop, restart, enable or disable a single service."""
        action = ServiceAction(action)
        prefix = "host-services" if ServiceType(service_type) == ServiceType.HOST else "services"
        return await self._send("POST", f"{prefix}/{service}/{action.value}")

    async def dispatch_global_action(self, action: Union[GlobalAction, str]) -> DispatchResult:
        """Start, stop or restart every service."""
        action = GlobalAction(action)
        return await self._send("POST", action.value)

    async def get_job(self, job_id: str) -> JobStatus:
        """Look up a tracked job."""
        data = await self._get_json(f"jobs/{job_id}")
        try:
            return JobStatus.model_validate(data)
        except ValidationError as e:
            raise GatewayError(f"Unexpected job payload for {job_id}") from e

    # Projects

    async def fetch_projects(self) -> ProjectList:
        """Authoritative project list."""
        payload = await self._get_json("projects")
        if not isinstance(payload, dict):
            raise GatewayError("Unexpected projects payload")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

        rows = []
        for item in data.get("projects") or []:
            if not isinstance(item, dict):
                continue
            item = dict(item)
            if not item.get("slug") and item.get("name"):
                item["slug"] = slugify(item["name"])
            try:
                rows.append(ProjectRow.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed project row: {e}")

        return ProjectList(
            projects=rows,
            tld=data.get("tld"),
            default_php_version=data.get("default_php_version"),
        )

    async def create_project(self, name: str, **options: Any) -> DispatchResult:
        """Request creation of a new project."""
        payload = {"name": name}
        payload.update({k: v for k, v in options.items() if v is not None})
        result = await self._send("POST", "projects", json=payload)
        if result.success and not result.slug:
            data = getattr(result, "data", None)
            if isinstance(data, dict) and data.get("slug"):
                result.slug = data["slug"]
            else:
                result.slug = slugify(name)
        return result

    async def delete_project(self, slug: str, keep_db: bool = False) -> DispatchResult:
        """Request deletion of a project."""
        params = {"keep_db": "1"} if keep_db else None
        return await self._send("DELETE", f"projects/{slug}", params=params)

    async def provision_status(self, slug: str) -> Dict[str, Any]:
        """Backend view of a project's provisioning status."""
        data = await self._get_json(f"projects/{slug}/provision-status")
        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected provision status payload for {slug}")
        return data
