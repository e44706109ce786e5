# Overview: Client for the remote system of record (collection CRUD plus remote procedures).

"""
Remote store contract

The remote store is the authoritative copy of every collection. The local
SQLite database mirrors it and queues mutations while the remote store cannot
be reached.

Contract:
- insert(collection, record) -> record as stored remotely (with permanent id)
- select(collection, filters) -> list of records
- update(collection, id, changes) -> updated record
- delete(collection, id)
- rpc(name, params) -> procedure result
- adjust_stock_quantity(product_id, delta): signed delta applied atomically
  server-side, used instead of read-modify-write on the remote quantity.

Error classification:
- RemoteUnavailableError: network failure, timeout, 408/429/5xx. Retryable.
- RemoteRejectedError: any other 4xx. The remote store refused the request.
A timeout is never treated as success.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from flask import current_app

logger = logging.getLogger(__name__)

REST_PREFIX = "/rest/v1"
ADJUST_STOCK_RPC = "adjust_stock_quantity"

_RETRYABLE_STATUS = {408, 425, 429}


class RemoteError(Exception):
    """Base class for remote store failures."""


class RemoteUnavailableError(RemoteError):
    """The remote store could not be reached (or timed out)."""


class RemoteRejectedError(RemoteError):
    """The remote store answered and refused the request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteStore:
    """Interface consumed by the sync queue. Implementations must be thread-safe."""

    def insert(self, collection: str, record: dict) -> dict:
        raise NotImplementedError

    def select(self, collection: str, filters: dict | None = None, *, limit: int | None = None) -> list[dict]:
        raise NotImplementedError

    def update(self, collection: str, record_id: str, changes: dict) -> dict:
        raise NotImplementedError

    def delete(self, collection: str, record_id: str) -> None:
        raise NotImplementedError

    def rpc(self, name: str, params: dict) -> Any:
        raise NotImplementedError

    def adjust_stock_quantity(self, product_id: str, delta: float) -> Any:
        return self.rpc(ADJUST_STOCK_RPC, {"p_product_id": product_id, "p_delta": delta})

    def ping(self) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        pass


class RestRemoteStore(RemoteStore):
    """
    PostgREST-style HTTP client.

    Collections map to /rest/v1/<collection>; rows are addressed with
    ``id=eq.<id>`` filters and procedures live under /rest/v1/rpc/<name>.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteUnavailableError(f"timeout calling {method} {path}") from exc
        except httpx.TransportError as exc:
            raise RemoteUnavailableError(f"network error calling {method} {path}: {exc}") from exc

        if response.status_code in _RETRYABLE_STATUS or response.status_code >= 500:
            raise RemoteUnavailableError(
                f"{method} {path} failed with {response.status_code}: {_error_message(response)}"
            )
        if response.status_code >= 400:
            raise RemoteRejectedError(_error_message(response), status_code=response.status_code)
        return response

    def insert(self, collection: str, record: dict) -> dict:
        response = self._request(
            "POST",
            f"{REST_PREFIX}/{collection}",
            json=record,
            headers={"Prefer": "return=representation"},
        )
        rows = response.json()
        if isinstance(rows, list):
            if not rows:
                raise RemoteRejectedError(f"insert into {collection} returned no row")
            return rows[0]
        return rows

    def select(self, collection: str, filters: dict | None = None, *, limit: int | None = None) -> list[dict]:
        params = {"select": "*"}
        for key, value in (filters or {}).items():
            params[key] = f"eq.{value}"
        if limit is not None:
            params["limit"] = str(limit)
        response = self._request("GET", f"{REST_PREFIX}/{collection}", params=params)
        return response.json()

    def update(self, collection: str, record_id: str, changes: dict) -> dict:
        response = self._request(
            "PATCH",
            f"{REST_PREFIX}/{collection}",
            params={"id": f"eq.{record_id}"},
            json=changes,
            headers={"Prefer": "return=representation"},
        )
        rows = response.json()
        if not rows:
            raise RemoteRejectedError(f"{collection} {record_id} not found", status_code=404)
        return rows[0]

    def delete(self, collection: str, record_id: str) -> None:
        self._request("DELETE", f"{REST_PREFIX}/{collection}", params={"id": f"eq.{record_id}"})

    def rpc(self, name: str, params: dict) -> Any:
        response = self._request("POST", f"{REST_PREFIX}/rpc/{name}", json=params)
        if not response.content:
            return None
        return response.json()

    def ping(self) -> bool:
        try:
            self._request("GET", f"{REST_PREFIX}/")
        except RemoteError as exc:
            logger.debug("Remote ping failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        self._client.close()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


class RemoteStoreExtension:
    """Binds a RemoteStore to a Flask app, in the manner of db/migrate."""

    key = "remote_store"

    def __init__(self, app=None):
        if app is not None:
            self.init_app(app)

    def init_app(self, app, store: RemoteStore | None = None) -> None:
        if store is None and app.config.get("REMOTE_URL"):
            store = RestRemoteStore(
                app.config["REMOTE_URL"],
                app.config.get("REMOTE_API_KEY", ""),
                timeout=float(app.config.get("REMOTE_TIMEOUT_SECONDS", 10)),
            )
        app.extensions[self.key] = store

    def set_store(self, app, store: RemoteStore | None) -> None:
        previous = app.extensions.get(self.key)
        if previous is not None and previous is not store:
            previous.close()
        app.extensions[self.key] = store

    def get_store(self) -> RemoteStore:
        store = current_app.extensions.get(self.key)
        if store is None:
            raise RemoteUnavailableError("remote store is not configured")
        return store

    def is_configured(self) -> bool:
        return current_app.extensions.get(self.key) is not None
