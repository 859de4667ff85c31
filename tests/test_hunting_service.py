"""
Hunting 数据服务接口测试

覆盖范围：
  - 配置模块（服务发现、令牌端点 URL）
  - API 响应模型
  - FastAPI 路由（通过 TestClient 测试，无需真实数据库与上游 API）
  - 命令行一次性拉取
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from hunting_service.exceptions import (
    HuntingRateLimitError,
    TokenAcquisitionError,
)


def _query_data(**overrides) -> dict:
    data = {
        "fingerprint": "f" * 64,
        "cached": False,
        "schema": [{"name": "DeviceName", "type": "String"}],
        "count": 1,
        "results": [{"DeviceName": "ws-01"}],
        "stats": None,
    }
    data.update(overrides)
    return data


# ─────────────────────────────────────────────────────────
# 1. 配置模块测试
# ─────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        """默认配置不依赖外部服务即可实例化"""
        from hunting_service.config import HuntingServiceSettings
        s = HuntingServiceSettings(_env_file=None)
        assert s.PORT == 8002
        assert s.RESOURCE == "https://api.securitycenter.microsoft.com"
        assert s.GRANT_TYPE == "client_credentials"

    def test_token_url(self):
        from hunting_service.config import HuntingServiceSettings
        s = HuntingServiceSettings(
            _env_file=None, TENANT_ID="contoso", AUTHORITY_HOST="https://login.example.com/"
        )
        assert s.TOKEN_URL == "https://login.example.com/contoso/oauth2/token"

    def test_credentials_configured(self):
        from hunting_service.config import HuntingServiceSettings
        assert not HuntingServiceSettings(_env_file=None, TENANT_ID="t", CLIENT_ID="c").CREDENTIALS_CONFIGURED
        assert HuntingServiceSettings(
            _env_file=None, TENANT_ID="t", CLIENT_ID="c", CLIENT_SECRET="s"
        ).CREDENTIALS_CONFIGURED

    def test_mongo_uri_with_auth(self):
        from hunting_service.config import HuntingServiceSettings
        s = HuntingServiceSettings(
            _env_file=None,
            MONGODB_USERNAME="user",
            MONGODB_PASSWORD="pass",
            MONGODB_HOST="db-host",
            MONGODB_DATABASE="hunting",
        )
        assert "user:pass@db-host:27017/hunting" in s.MONGO_URI

    def test_redis_url_with_auth(self):
        from hunting_service.config import HuntingServiceSettings
        s = HuntingServiceSettings(_env_file=None, REDIS_PASSWORD="secret", REDIS_HOST="cache")
        assert ":secret@cache:6379" in s.REDIS_URL

    def test_docker_service_discovery(self):
        """Docker 环境下默认使用服务名而非 localhost"""
        with patch.dict(os.environ, {"DOCKER_CONTAINER": "true"}, clear=False):
            from hunting_service import config as cfg_module
            assert cfg_module._default_mongo_host() == "mongodb"
            assert cfg_module._default_redis_host() == "redis"


# ─────────────────────────────────────────────────────────
# 2. API 响应模型测试
# ─────────────────────────────────────────────────────────

class TestApiResponse:
    def test_ok(self):
        from hunting_service.models.response import ApiResponse
        r = ApiResponse.ok(data={"key": "value"}, message="done")
        assert r.success is True
        assert r.error is None

    def test_from_exception(self):
        from hunting_service.models.response import ApiResponse
        r = ApiResponse.from_exception(TokenAcquisitionError("令牌端点返回 401"))
        assert r.success is False
        assert r.error == "TokenAcquisitionError"
        assert r.message == "令牌端点返回 401"


# ─────────────────────────────────────────────────────────
# 3. HTTP 路由测试（TestClient，不需要真实数据库）
# ─────────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def client():
    """创建测试客户端，mock 数据库连接"""
    with patch("hunting_service.main.init_mongodb", new_callable=AsyncMock, return_value=False), \
         patch("hunting_service.main.init_redis", new_callable=AsyncMock, return_value=False), \
         patch("hunting_service.main.close_connections", new_callable=AsyncMock):
        from hunting_service.main import app
        with TestClient(app) as c:
            yield c


@pytest.fixture(scope="module")
def auth_headers(client):
    r = client.post("/api/auth/login", json={"username": "admin", "password": "admin123"})
    return {"Authorization": f"Bearer {r.json()['data']['access_token']}"}


@pytest.fixture
def query_service():
    svc = MagicMock()
    svc.run_query = AsyncMock(return_value=_query_data())
    svc.run_query_csv = AsyncMock(return_value="DeviceName\nws-01\n")
    with patch("hunting_service.routers.hunting.get_query_service", return_value=svc), \
         patch("hunting_service.routers.saved.get_query_service", return_value=svc):
        yield svc


class TestHealthRoutes:
    def test_health_endpoint(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["status"] == "ok"
        assert "configured" in body["data"]["upstream"]
        assert "access_token" not in str(body)

    def test_healthz_endpoint(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_root_endpoint(self, client):
        body = client.get("/").json()
        assert "version" in body
        assert "docs" in body


class TestAuthRoutes:
    def test_login_wrong_password(self, client):
        resp = client.post("/api/auth/login", json={"username": "admin", "password": "wrong"})
        assert resp.status_code == 401

    def test_me_with_token(self, client, auth_headers):
        resp = client.get("/api/auth/me", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["data"] == {"username": "admin", "is_admin": True}

    def test_missing_bearer_is_401(self, client):
        assert client.get("/api/auth/me").status_code == 401
        assert client.get("/api/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401

    def test_register_requires_admin(self, client):
        from hunting_service.services.auth_service import AuthService, Principal
        token = AuthService.create_access_token(Principal(username="analyst"))
        resp = client.post(
            "/api/auth/register",
            json={"username": "bob", "password": "password123"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 403

    def test_register_short_password(self, client, auth_headers):
        resp = client.post(
            "/api/auth/register",
            json={"username": "bob", "password": "pw"},
            headers=auth_headers,
        )
        assert resp.status_code == 422

    def test_register_without_database(self, client, auth_headers):
        resp = client.post(
            "/api/auth/register",
            json={"username": "bob", "password": "password123"},
            headers=auth_headers,
        )
        assert resp.status_code == 503
        assert resp.json()["error"] == "StorageUnavailableError"

    def test_register_duplicate(self, client, auth_headers):
        from hunting_service.services.auth_service import AuthService
        with patch.object(AuthService, "create_user", new=AsyncMock(return_value=False)):
            resp = client.post(
                "/api/auth/register",
                json={"username": "bob", "password": "password123"},
                headers=auth_headers,
            )
        assert resp.status_code == 409


class TestHuntingRoutes:
    def test_requires_token(self, client):
        resp = client.post("/api/hunting/query", json={"query": "DeviceInfo"})
        assert resp.status_code == 401

    def test_run_query(self, client, auth_headers, query_service):
        resp = client.post(
            "/api/hunting/query",
            json={"query": "DeviceInfo | take 1", "columns": ["DeviceName"], "limit": 1},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["results"] == [{"DeviceName": "ws-01"}]
        query_service.run_query.assert_awaited_once_with(
            "DeviceInfo | take 1", force_refresh=False, columns=["DeviceName"], limit=1
        )

    def test_empty_query_rejected(self, client, auth_headers, query_service):
        resp = client.post("/api/hunting/query", json={"query": ""}, headers=auth_headers)
        assert resp.status_code == 422
        query_service.run_query.assert_not_awaited()

    def test_unknown_column(self, client, auth_headers, query_service):
        query_service.run_query.side_effect = ValueError("结果中不存在的列: ['Nope']")
        resp = client.post(
            "/api/hunting/query",
            json={"query": "DeviceInfo", "columns": ["Nope"]},
            headers=auth_headers,
        )
        assert resp.status_code == 400

    def test_rate_limit_maps_to_429(self, client, auth_headers, query_service):
        query_service.run_query.side_effect = HuntingRateLimitError("限流", retry_after=12)
        resp = client.post("/api/hunting/query", json={"query": "DeviceInfo"}, headers=auth_headers)
        assert resp.status_code == 429
        assert resp.headers["retry-after"] == "12"
        body = resp.json()
        assert body["success"] is False
        assert body["error"] == "HuntingRateLimitError"

    def test_token_failure_maps_to_502(self, client, auth_headers, query_service):
        query_service.run_query.side_effect = TokenAcquisitionError("令牌端点返回 401: invalid_client")
        resp = client.post("/api/hunting/query", json={"query": "DeviceInfo"}, headers=auth_headers)
        assert resp.status_code == 502
        assert "invalid_client" in resp.json()["message"]

    def test_csv(self, client, auth_headers, query_service):
        resp = client.post("/api/hunting/query/csv", json={"query": "DeviceInfo"}, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert resp.text == "DeviceName\nws-01\n"

    def test_token_status(self, client, auth_headers):
        resp = client.get("/api/hunting/token", headers=auth_headers)
        assert resp.status_code == 200
        assert set(resp.json()["data"]) == {"configured", "cached", "expires_at"}


class TestSavedQueryRoutes:
    def test_unavailable_without_database(self, client, auth_headers):
        resp = client.get("/api/hunting/saved", headers=auth_headers)
        assert resp.status_code == 503
        assert resp.json()["error"] == "StorageUnavailableError"

    def test_invalid_name(self, client, auth_headers):
        resp = client.post(
            "/api/hunting/saved",
            json={"name": "bad name!", "query": "DeviceInfo"},
            headers=auth_headers,
        )
        assert resp.status_code == 422

    def test_save_and_run(self, client, auth_headers, query_service):
        saved = MagicMock()
        saved.save_query = AsyncMock(return_value=True)
        saved.get_query = AsyncMock(return_value={"name": "devices", "query": "DeviceInfo"})
        with patch("hunting_service.routers.saved.get_saved_query_service", return_value=saved):
            created = client.post(
                "/api/hunting/saved",
                json={"name": "devices", "query": "DeviceInfo"},
                headers=auth_headers,
            )
            as_json = client.get("/api/hunting/saved/devices/run", headers=auth_headers)
            as_csv = client.get("/api/hunting/saved/devices/run?format=csv", headers=auth_headers)

        assert created.status_code == 200
        saved.save_query.assert_awaited_once_with("devices", "DeviceInfo", "", created_by="admin")
        assert as_json.json()["data"]["count"] == 1
        assert as_csv.text == "DeviceName\nws-01\n"
        query_service.run_query.assert_awaited_once_with("DeviceInfo", force_refresh=False)

    def test_duplicate_name(self, client, auth_headers):
        saved = MagicMock(save_query=AsyncMock(return_value=False))
        with patch("hunting_service.routers.saved.get_saved_query_service", return_value=saved):
            resp = client.post(
                "/api/hunting/saved",
                json={"name": "devices", "query": "DeviceInfo"},
                headers=auth_headers,
            )
        assert resp.status_code == 409

    def test_missing_query(self, client, auth_headers):
        saved = MagicMock(
            get_query=AsyncMock(return_value=None),
            delete_query=AsyncMock(return_value=False),
        )
        with patch("hunting_service.routers.saved.get_saved_query_service", return_value=saved):
            assert client.get("/api/hunting/saved/nope", headers=auth_headers).status_code == 404
            assert client.delete("/api/hunting/saved/nope", headers=auth_headers).status_code == 404
            assert client.get("/api/hunting/saved/nope/run", headers=auth_headers).status_code == 404


class TestCacheRoutes:
    def test_stats(self, client, auth_headers):
        resp = client.get("/api/cache/stats", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["redis"]["status"] == "disabled"

    def test_clear_by_query(self, client, auth_headers):
        resp = client.post("/api/cache/clear", json={"query": "DeviceInfo"}, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["message"].startswith("缓存已清理: hunting:")

    def test_clear_needs_target(self, client, auth_headers):
        resp = client.post("/api/cache/clear", json={}, headers=auth_headers)
        assert resp.status_code == 400


# ─────────────────────────────────────────────────────────
# 4. 命令行测试
# ─────────────────────────────────────────────────────────

class TestFetchCli:
    def test_prints_results(self, capsys):
        from hunting_service import fetch
        with patch.object(fetch, "fetch", new=AsyncMock(return_value='{"Results": []}')) as mocked:
            assert fetch.main(["-q", "DeviceInfo", "--format", "json"]) == 0
        mocked.assert_awaited_once_with("DeviceInfo", "json")
        assert capsys.readouterr().out == '{"Results": []}\n'

    def test_reads_query_file_and_writes_output(self, tmp_path):
        from hunting_service import fetch
        query_file = tmp_path / "q.kql"
        query_file.write_text("DeviceInfo | take 5", encoding="utf-8")
        out = tmp_path / "out.csv"
        with patch.object(fetch, "fetch", new=AsyncMock(return_value="A\n1\n")) as mocked:
            rc = fetch.main(["-f", str(query_file), "--format", "csv", "-o", str(out)])
        assert rc == 0
        mocked.assert_awaited_once_with("DeviceInfo | take 5", "csv")
        assert out.read_text(encoding="utf-8") == "A\n1\n"

    def test_failure_exit_code(self):
        from hunting_service import fetch
        with patch.object(fetch, "fetch", new=AsyncMock(side_effect=TokenAcquisitionError("boom"))):
            assert fetch.main(["-q", "DeviceInfo"]) == 1

    def test_query_source_required(self):
        from hunting_service import fetch
        with pytest.raises(SystemExit):
            fetch.main([])

    def test_unreadable_query_file(self, tmp_path):
        from hunting_service import fetch
        with patch.object(fetch, "fetch", new=AsyncMock()) as mocked:
            assert fetch.main(["-f", str(tmp_path / "missing.kql")]) == 1
        mocked.assert_not_awaited()

    def test_unwritable_output(self, tmp_path):
        from hunting_service import fetch
        out = tmp_path / "no-such-dir" / "out.json"
        with patch.object(fetch, "fetch", new=AsyncMock(return_value="{}")):
            assert fetch.main(["-q", "DeviceInfo", "-o", str(out)]) == 1


# ─────────────────────────────────────────────────────────
# 5. 认证服务测试
# ─────────────────────────────────────────────────────────

def _users_db(find_one=None, insert_one=None) -> MagicMock:
    users = MagicMock()
    users.find_one = find_one or AsyncMock(return_value=None)
    users.insert_one = insert_one or AsyncMock()
    db = MagicMock()
    db.__getitem__.return_value = users
    return db


class TestAuthService:
    def setup_method(self):
        from hunting_service.config import settings
        from hunting_service.services.auth_service import AuthService
        self.settings = settings
        self.svc = AuthService()
        self._iterations = patch.object(settings, "PASSWORD_HASH_ITERATIONS", 1000)
        self._iterations.start()

    def teardown_method(self):
        self._iterations.stop()

    def test_password_hash_roundtrip(self):
        from hunting_service.services.auth_service import hash_password, verify_password
        stored = hash_password("s3cret-pass")
        assert stored.startswith("pbkdf2_sha256$1000$")
        assert verify_password("s3cret-pass", stored)
        assert not verify_password("wrong-pass", stored)
        assert hash_password("s3cret-pass") != stored

    def test_verify_rejects_malformed_hash(self):
        from hunting_service.services.auth_service import verify_password
        assert not verify_password("x", "")
        assert not verify_password("x", "md5$1$salt$abc")
        assert not verify_password("x", "pbkdf2_sha256$many$salt$abc")

    def test_token_roundtrip_carries_admin_flag(self):
        from hunting_service.services.auth_service import Principal
        token = self.svc.create_access_token(Principal(username="alice", is_admin=True))
        payload = self.svc.verify_token(token)
        assert payload.sub == "alice"
        assert payload.is_admin is True
        assert self.svc.verify_token(token + "x") is None

    def test_fallback_admin_without_database(self):
        with patch("hunting_service.services.auth_service.get_mongo_db", return_value=None):
            principal = asyncio.run(self.svc.authenticate("admin", "admin123"))
            assert principal.is_admin is True
            assert asyncio.run(self.svc.authenticate("admin", "nope")) is None

    def test_fallback_can_be_disabled(self):
        with patch("hunting_service.services.auth_service.get_mongo_db", return_value=None), \
             patch.object(self.settings, "ADMIN_FALLBACK_ENABLED", False):
            assert asyncio.run(self.svc.authenticate("admin", "admin123")) is None

    def test_stored_user_takes_precedence_over_fallback(self):
        from hunting_service.services.auth_service import hash_password
        stored = {"username": "admin", "password_hash": hash_password("rotated-pass"), "is_admin": True}
        db = _users_db(find_one=AsyncMock(return_value=stored))
        with patch("hunting_service.services.auth_service.get_mongo_db", return_value=db):
            assert asyncio.run(self.svc.authenticate("admin", "admin123")) is None
            principal = asyncio.run(self.svc.authenticate("admin", "rotated-pass"))
        assert principal.username == "admin"
        assert principal.is_admin is True

    def test_create_user_hashes_password(self):
        db = _users_db()
        with patch("hunting_service.services.auth_service.get_mongo_db", return_value=db):
            assert asyncio.run(self.svc.create_user("bob", "password123")) is True
        doc = db["users"].insert_one.await_args.args[0]
        assert doc["username"] == "bob"
        assert doc["is_admin"] is False
        assert "password123" not in doc["password_hash"]

    def test_create_user_duplicate(self):
        from pymongo.errors import DuplicateKeyError
        db = _users_db(insert_one=AsyncMock(side_effect=DuplicateKeyError("dup")))
        with patch("hunting_service.services.auth_service.get_mongo_db", return_value=db):
            assert asyncio.run(self.svc.create_user("bob", "password123")) is False

    def test_create_user_without_database(self):
        from hunting_service.exceptions import StorageUnavailableError
        with patch("hunting_service.services.auth_service.get_mongo_db", return_value=None):
            with pytest.raises(StorageUnavailableError):
                asyncio.run(self.svc.create_user("bob", "password123"))
