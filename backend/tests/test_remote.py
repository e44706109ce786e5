# Overview: Pytest coverage for the HTTP remote store client and its error mapping.

import json

import httpx
import pytest
from stockroom.remote import RemoteRejectedError, RemoteUnavailableError, RestRemoteStore


def _store(handler):
    return RestRemoteStore("http://remote.test/", "key", transport=httpx.MockTransport(handler))


class TestErrorMapping:
    def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(RemoteUnavailableError):
            _store(handler).select("products")

    def test_connect_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RemoteUnavailableError):
            _store(handler).insert("products", {"name": "Helmet"})

    @pytest.mark.parametrize("status", [429, 503])
    def test_retryable_status_is_unavailable(self, status):
        store = _store(lambda request: httpx.Response(status, json={"message": "busy"}))
        with pytest.raises(RemoteUnavailableError):
            store.insert("products", {"name": "Helmet"})

    def test_client_error_is_rejected_with_message(self):
        store = _store(lambda request: httpx.Response(400, json={"message": "duplicate key"}))

        with pytest.raises(RemoteRejectedError) as exc:
            store.insert("products", {"name": "Helmet"})

        assert exc.value.status_code == 400
        assert str(exc.value) == "duplicate key"

    def test_plain_text_error_body(self):
        store = _store(lambda request: httpx.Response(422, text="bad row"))
        with pytest.raises(RemoteRejectedError, match="bad row"):
            store.update("products", "p1", {"name": "x"})

    def test_ping(self):
        assert _store(lambda request: httpx.Response(200, json={})).ping() is True
        assert _store(lambda request: httpx.Response(502)).ping() is False


class TestRequests:
    def test_insert_returns_first_row(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["prefer"] = request.headers.get("Prefer")
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json=[{"id": "prod-1", "name": "Helmet"}])

        row = _store(handler).insert("products", {"name": "Helmet"})

        assert row == {"id": "prod-1", "name": "Helmet"}
        assert seen == {
            "path": "/rest/v1/products",
            "prefer": "return=representation",
            "auth": "Bearer key",
            "body": {"name": "Helmet"},
        }

    def test_insert_without_row_is_rejected(self):
        store = _store(lambda request: httpx.Response(201, json=[]))
        with pytest.raises(RemoteRejectedError, match="returned no row"):
            store.insert("movements", {"kind": "receipt"})

    def test_select_and_update_use_eq_filters(self):
        seen = []

        def handler(request):
            seen.append((request.method, dict(request.url.params)))
            if request.method == "PATCH":
                return httpx.Response(200, json=[{"id": "p1", "name": "New"}])
            return httpx.Response(200, json=[{"id": "p1"}])

        store = _store(handler)
        assert store.select("products", {"sku": "000001"}, limit=5) == [{"id": "p1"}]
        assert store.update("products", "p1", {"name": "New"})["name"] == "New"

        assert seen[0] == ("GET", {"select": "*", "sku": "eq.000001", "limit": "5"})
        assert seen[1] == ("PATCH", {"id": "eq.p1"})

    def test_update_of_missing_row_is_404(self):
        store = _store(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(RemoteRejectedError) as exc:
            store.update("products", "gone", {"name": "x"})
        assert exc.value.status_code == 404

    def test_adjust_stock_quantity_calls_rpc(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=7)

        result = _store(handler).adjust_stock_quantity("prod-1", -3)

        assert result == 7
        assert seen == {
            "path": "/rest/v1/rpc/adjust_stock_quantity",
            "body": {"p_product_id": "prod-1", "p_delta": -3},
        }

    def test_rpc_without_content_returns_none(self):
        assert _store(lambda request: httpx.Response(204)).rpc("noop", {}) is None
