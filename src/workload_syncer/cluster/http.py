"""
HTTP cluster client following Kubernetes REST conventions.

Core-group types live under ``/api/v1``, everything else under
``/apis/{group}/{version}``. When a workspace is given, paths are prefixed
with ``/clusters/{workspace}`` so one server can host many logical
workspaces.
"""
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..errors import (
    AlreadyExistsError,
    InvalidObjectError,
    NotFoundError,
    OptimisticConflictError,
    SyncerError,
    TransientConnectivityError,
)
from ..models import ResourceType, get_name, get_namespace
from .base import WatchEvent, WatchEventType, format_selector

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return body.get("message") or response.reason_phrase
    return response.reason_phrase


def raise_for_status(response: httpx.Response) -> None:
    """Map an API error response onto the syncer error taxonomy."""
    if response.is_success:
        return
    status = response.status_code
    message = f"{response.request.method} {response.request.url.path}: {_error_message(response)}"
    if status == 404:
        raise NotFoundError(message)
    if status == 409:
        reason = ""
        try:
            reason = response.json().get("reason", "")
        except (ValueError, AttributeError):
            pass
        if reason == "AlreadyExists":
            raise AlreadyExistsError(message)
        raise OptimisticConflictError(message)
    if status in (400, 422):
        raise InvalidObjectError(message, reason="Invalid" if status == 422 else "BadRequest")
    if status == 429 or status >= 500:
        raise TransientConnectivityError(message)
    raise SyncerError(message)


class HttpClusterClient:
    """
    ClusterClient backed by an API server.

    Args:
        server: Base URL of the API server
        token: Bearer token, if any
        workspace: Logical workspace path used as a ``/clusters/`` prefix
        verify_tls: Verify the server certificate
        timeout: Per-request timeout in seconds (watches are unbounded)
        transport: Optional httpx transport, used in tests
    """

    def __init__(
        self,
        server: str,
        token: Optional[str] = None,
        workspace: Optional[str] = None,
        verify_tls: bool = True,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server = server.rstrip("/")
        self.token = token
        self.workspace = workspace
        self.verify_tls = verify_tls
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.server,
                timeout=self.timeout,
                headers=headers,
                verify=self.verify_tls,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # --- paths ---

    def _prefix(self) -> str:
        return f"/clusters/{self.workspace}" if self.workspace else ""

    def _group_path(self, rtype: ResourceType) -> str:
        if rtype.group:
            return f"{self._prefix()}/apis/{rtype.group}/{rtype.version}"
        return f"{self._prefix()}/api/{rtype.version}"

    def path(self, rtype: ResourceType, namespace: Optional[str] = None, name: Optional[str] = None) -> str:
        parts = [self._group_path(rtype)]
        if rtype.namespaced and namespace:
            parts.append(f"namespaces/{namespace}")
        parts.append(rtype.plural)
        if name:
            parts.append(name)
        return "/".join(parts)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientConnectivityError(f"{method} {url}: {e}", cause=e) from e
        raise_for_status(response)
        return response

    # --- ClusterClient ---

    async def get(self, rtype: ResourceType, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self._request("GET", self.path(rtype, namespace, name))
        except NotFoundError:
            return None
        return response.json()

    async def list(
        self,
        rtype: ResourceType,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        params = {}
        if label_selector:
            params["labelSelector"] = format_selector(label_selector)
        response = await self._request("GET", self.path(rtype, namespace), params=params)
        items = response.json().get("items") or []
        for item in items:
            # List responses omit per-item type information
            item.setdefault("apiVersion", rtype.api_version)
            item.setdefault("kind", rtype.kind)
        return items

    async def create(self, rtype: ResourceType, obj: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("POST", self.path(rtype, get_namespace(obj)), json=obj)
        return response.json()

    async def update(self, rtype: ResourceType, obj: Dict[str, Any]) -> Dict[str, Any]:
        url = self.path(rtype, get_namespace(obj), get_name(obj))
        response = await self._request("PUT", url, json=obj)
        return response.json()

    async def update_status(self, rtype: ResourceType, obj: Dict[str, Any]) -> Dict[str, Any]:
        url = self.path(rtype, get_namespace(obj), get_name(obj)) + "/status"
        response = await self._request("PUT", url, json=obj)
        return response.json()

    async def delete(
        self,
        rtype: ResourceType,
        namespace: str,
        name: str,
        resource_version: Optional[str] = None,
    ) -> None:
        body: Dict[str, Any] = {"kind": "DeleteOptions", "apiVersion": "v1"}
        if resource_version:
            body["preconditions"] = {"resourceVersion": resource_version}
        await self._request("DELETE", self.path(rtype, namespace, name), json=body)

    async def watch(self, rtype: ResourceType, namespace: Optional[str] = None) -> AsyncIterator[WatchEvent]:
        """Stream watch events as newline-delimited JSON."""
        client = await self._get_client()
        url = self.path(rtype, namespace)
        try:
            async with client.stream(
                "GET", url, params={"watch": "true", "allowWatchBookmarks": "true"}, timeout=None
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise_for_status(response)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    payload = json.loads(line)
                    event_type = payload.get("type")
                    if event_type == "BOOKMARK":
                        continue
                    if event_type == "ERROR":
                        status = payload.get("object") or {}
                        raise TransientConnectivityError(
                            f"watch {url} ended: {status.get('message', 'error event')}"
                        )
                    yield WatchEvent(WatchEventType(event_type), payload.get("object") or {})
        except httpx.TransportError as e:
            raise TransientConnectivityError(f"watch {url}: {e}", cause=e) from e

    async def server_resources(self) -> List[ResourceType]:
        """Walk the discovery documents for the core group and every preferred group version."""
        found: List[ResourceType] = []
        core = await self._request("GET", f"{self._prefix()}/api/v1")
        found.extend(self._parse_resource_list("", "v1", core.json()))

        groups = await self._request("GET", f"{self._prefix()}/apis")
        for group in groups.json().get("groups") or []:
            preferred = (group.get("preferredVersion") or {}).get("version")
            if not preferred:
                versions = group.get("versions") or []
                if not versions:
                    continue
                preferred = versions[0]["version"]
            doc = await self._request("GET", f"{self._prefix()}/apis/{group['name']}/{preferred}")
            found.extend(self._parse_resource_list(group["name"], preferred, doc.json()))
        return found

    @staticmethod
    def _parse_resource_list(group: str, version: str, doc: Dict[str, Any]) -> List[ResourceType]:
        result = []
        for resource in doc.get("resources") or []:
            # Skip subresources such as deployments/status
            if "/" in resource.get("name", ""):
                continue
            result.append(ResourceType(
                group=group,
                version=version,
                kind=resource["kind"],
                plural=resource["name"],
                namespaced=bool(resource.get("namespaced", True)),
            ))
        return result

    async def probe(self) -> None:
        await self._request("GET", f"{self._prefix()}/api")


__all__ = ["HttpClusterClient", "raise_for_status"]
