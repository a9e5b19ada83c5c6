"""
REST collaborator for the compliance dashboard API.

All calls are plain blocking requests made on a worker thread, so the
event loop stays responsive. Cancelling the awaiting task abandons the
response; the request is never retried or applied afterwards.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import requests

from .errors import BackendError, TransportFailure
from .logger import get_logger
from .models import (
    ConnectivityReport,
    DiscoveredAttributes,
    ExistsResult,
    HostAttributes,
    InventoryFilter,
    InventoryPage,
    InventoryRecord,
    ProbeResult,
    TriggerResult,
    as_create_payload,
)
from .retry import RetryableStatus, RetryError, exponential_backoff, should_retry_http_status

logger = get_logger()


def _error_message(resp: requests.Response) -> str:
    """Pull the server's explanation out of an error response."""
    try:
        body = resp.json()
    except ValueError:
        text = resp.text.strip()
        return text or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        for key in ("detail", "message"):
            if isinstance(body.get(key), str):
                return body[key]
    return str(body)


class HttpBackend:

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 15.0,
        inventory_path: str = "/instance/",
        items_key: str = "instances",
        total_key: str = "total_instances",
        max_retries: int = 3,
        retry_delay: float = 0.5,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.inventory_path = inventory_path
        self.items_key = items_key
        self.total_key = total_key
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if token:
            self.set_token(token)

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "HttpBackend":
        return cls(settings.api_url, token=settings.api_token, timeout=settings.http_timeout, **kwargs)

    def set_token(self, token: Optional[str]) -> None:
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        else:
            self.session.headers.pop("Authorization", None)

    def close(self) -> None:
        self.session.close()

    # Blocking transport

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        logger.record_api_call()
        logger.debug("API request", method=method, url=url)
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.warning("API request timed out", method=method, url=url)
            raise TransportFailure(f"Request timed out: {url}") from e
        except requests.exceptions.RequestException as e:
            logger.error("API request error", method=method, url=url, error=str(e))
            raise TransportFailure(f"Unable to connect to server: {e}") from e

        if resp.status_code == 204:
            return {}
        if not resp.ok:
            message = _error_message(resp)
            if resp.status_code == 401:
                logger.error("Token invalid or expired. Please re-authenticate.", url=url)
            else:
                logger.error("API error response", url=url, status=resp.status_code, error=message)
            raise BackendError(message, status=resp.status_code)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET with backoff on timeouts, connection errors and 408/429/5xx."""

        @exponential_backoff(
            max_retries=self.max_retries,
            base_delay=self.retry_delay,
            max_delay=8.0,
            exceptions=(TransportFailure, RetryableStatus),
            on_retry=lambda attempt, e, delay: logger.warning(
                "Retrying GET", path=path, attempt=attempt, delay=delay, error=str(e)
            ),
        )
        def attempt():
            try:
                return self._request("GET", path, params=params)
            except BackendError as e:
                if not isinstance(e, TransportFailure) and e.status is not None and should_retry_http_status(e.status):
                    raise RetryableStatus(e.status) from e
                raise

        try:
            return attempt()
        except RetryError as e:
            cause = e.__cause__
            if isinstance(cause, RetryableStatus) and isinstance(cause.__cause__, BackendError):
                raise cause.__cause__ from e
            if isinstance(cause, TransportFailure):
                raise TransportFailure(str(cause)) from e
            raise TransportFailure(str(e)) from e

    # Collaborator contract

    async def inventory(self, filter: InventoryFilter, page: int, page_size: int) -> InventoryPage:
        params: Dict[str, Any] = {"page": page, "page_size": page_size}
        if filter.keyword:
            params["keyword"] = filter.keyword
        if filter.status:
            params["status"] = filter.status
        body = await asyncio.to_thread(self._get, self.inventory_path, params)
        items = body.get(self.items_key) or []
        records = tuple(InventoryRecord(id=int(item["id"]), attributes=item) for item in items)
        return InventoryPage(records=records, total_count=int(body.get(self.total_key) or 0))

    async def exists_by_key(self, key: str) -> ExistsResult:
        body = await asyncio.to_thread(self._get, f"/servers/validate/ip/{quote(key, safe='')}")
        return ExistsResult(valid=bool(body.get("valid")), message=body.get("message") or "")

    async def test_connectivity(self, hosts: Sequence[HostAttributes]) -> ConnectivityReport:
        payload = {
            "servers": [
                {
                    "ip": h.ip_address,
                    "ssh_user": h.ssh_user,
                    "ssh_password": h.ssh_password,
                    "ssh_port": h.ssh_port,
                }
                for h in hosts
            ]
        }
        body = await asyncio.to_thread(self._request, "POST", "/servers/test-connection", json=payload)
        results: List[ProbeResult] = []
        for item in body.get("results") or []:
            results.append(
                ProbeResult(
                    key=str(item.get("ip", "")),
                    ok=item.get("status") == "success",
                    message=item.get("message") or "",
                    discovered=DiscoveredAttributes(
                        hostname=item.get("hostname") or None,
                        os_version=item.get("os_version") or None,
                    ),
                    detail=item.get("error_details") or None,
                )
            )
        successful = body.get("successful_connections")
        if successful is None:
            successful = sum(1 for r in results if r.ok)
        return ConnectivityReport(results=tuple(results), successful_count=int(successful))

    async def create_batch(self, hosts: Sequence[HostAttributes], group_id: int) -> None:
        payload = as_create_payload(list(hosts), group_id)
        await asyncio.to_thread(self._request, "POST", "/servers/batch", json=payload)

    async def trigger_operation(self, ids: Optional[Sequence[int]], batch_size: int) -> TriggerResult:
        payload = {
            "server_ids": list(ids) if ids is not None else None,
            "batch_size": batch_size,
        }
        body = await asyncio.to_thread(self._request, "POST", "/compliance/scan", json=payload)
        message = ""
        accepted = True
        if isinstance(body, dict):
            message = body.get("message") or ""
            if "accepted" in body:
                accepted = bool(body["accepted"])
        return TriggerResult(accepted=accepted, message=message)
