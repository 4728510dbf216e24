"""
HTTP 接口测试

通过 ASGI 直接调用应用，依赖替换为测试用的数据库会话与假模型：
- 统一错误响应 {"detail", "code"}
- 知识库 / 对话 / 文件的主要端点
- SSE 流式回答
"""

import json

import httpx
import pytest
import pytest_asyncio

from kbchat.api.deps import get_chat_responder, get_coordinator, get_db_session, get_files
from kbchat.infra.storage import LocalFileStorage
from kbchat.main import app
from kbchat.services.files import FileService
from kbchat.services.ingestion import IngestionService
from kbchat.services.responder import RetrievalResponder
from kbchat.services.streaming import StreamCoordinator

OWNER = {"X-User-Id": "1"}
STRANGER = {"X-User-Id": "2"}


@pytest_asyncio.fixture
async def client(session_factory, fake_embedder, vector_index, fake_chat_model, tmp_path):
    responder = RetrievalResponder(embedder=fake_embedder, index=vector_index, chat_model=fake_chat_model)
    ingestion = IngestionService(embedder=fake_embedder, index=vector_index, batch_delay_ms=0)
    files = FileService(storage=LocalFileStorage(root=tmp_path / "uploads"), ingestion=ingestion)
    coordinator = StreamCoordinator(session_factory=session_factory, responder=responder)

    async def _db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _db
    app.dependency_overrides[get_chat_responder] = lambda: responder
    app.dependency_overrides[get_files] = lambda: files
    app.dependency_overrides[get_coordinator] = lambda: coordinator

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


async def _create_knowledge(client, **body) -> dict:
    resp = await client.post("/v1/knowledge", json={"name": "产品手册", **body}, headers=OWNER)
    assert resp.status_code == 201
    return resp.json()


class TestCommon:
    """测试公共行为"""

    @pytest.mark.asyncio
    async def test_healthz(self, client):
        resp = await client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_missing_user_id(self, client):
        resp = await client.get("/v1/knowledge/owned")
        assert resp.status_code == 401
        assert resp.json()["code"] == "UNAUTHENTICATED"

    @pytest.mark.asyncio
    async def test_validation_error_code(self, client):
        resp = await client.post("/v1/knowledge", json={"name": ""}, headers=OWNER)
        assert resp.status_code == 422
        assert resp.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_file_type_info(self, client):
        resp = await client.get("/v1/files/type-info", params={"path": "scan.PNG"})
        assert resp.status_code == 200
        assert resp.json()["type"] == "image"


class TestKnowledgeEndpoints:
    """测试知识库端点"""

    @pytest.mark.asyncio
    async def test_create_and_list(self, client):
        created = await _create_knowledge(client, is_shared=True)

        resp = await client.get("/v1/knowledge/owned", headers=OWNER)
        assert [item["id"] for item in resp.json()["items"]] == [created["id"]]

        resp = await client.get("/v1/knowledge/shared", headers=STRANGER)
        body = resp.json()
        assert body["total"] == 1
        assert body["items"][0]["file_count"] == 0

    @pytest.mark.asyncio
    async def test_join_leave_codes(self, client):
        created = await _create_knowledge(client, is_shared=True)
        kid = created["id"]

        assert (await client.post(f"/v1/knowledge/{kid}/join", headers=STRANGER)).status_code == 200
        resp = await client.post(f"/v1/knowledge/{kid}/join", headers=STRANGER)
        assert resp.status_code == 409
        assert resp.json() == {"detail": resp.json()["detail"], "code": "KNOWLEDGE_HAS_JOINED"}

        resp = await client.post(f"/v1/knowledge/{kid}/leave", headers=OWNER)
        assert resp.json()["code"] == "KNOWLEDGE_HAS_OWNED"

    @pytest.mark.asyncio
    async def test_private_detail_forbidden(self, client):
        created = await _create_knowledge(client)
        resp = await client.get(f"/v1/knowledge/{created['id']}", headers=STRANGER)
        assert resp.status_code == 403
        assert resp.json()["code"] == "KNOWLEDGE_UNAUTHORIZED"


class TestConversationEndpoints:
    """测试对话端点"""

    @pytest.mark.asyncio
    async def test_create_and_detail(self, client):
        resp = await client.post(
            "/v1/conversations", json={"type": "global", "first_message": "你好"}, headers=OWNER
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["conversation"]["title"] == "你好"
        assert [m["sender_type"] for m in body["messages"]] == ["user", "assistant"]

        cid = body["conversation"]["id"]
        resp = await client.get(f"/v1/conversations/{cid}", headers=STRANGER)
        assert resp.status_code == 403
        assert resp.json()["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_knowledge_conversation_requires_id(self, client):
        resp = await client.post(
            "/v1/conversations", json={"type": "knowledge", "first_message": "你好"}, headers=OWNER
        )
        assert resp.status_code == 422

        resp = await client.get("/v1/conversations/current", params={"type": "knowledge"}, headers=OWNER)
        assert resp.status_code == 400
        assert resp.json()["code"] == "KNOWLEDGE_ID_REQUIRED"

    @pytest.mark.asyncio
    async def test_stream_sse(self, client):
        current = (await client.get("/v1/conversations/current", headers=OWNER)).json()

        resp = await client.post(
            "/v1/conversations/stream",
            json={"conversation_id": current["id"], "user_message": "讲个笑话"},
            headers=OWNER,
        )

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        frames = [json.loads(line[len("data: "):]) for line in resp.text.split("\n\n") if line]
        assert [f["type"] for f in frames] == ["token", "token", "token", "done"]

        detail = (await client.get(f"/v1/conversations/{current['id']}", headers=OWNER)).json()
        assert [(m["sender_type"], m["is_success"]) for m in detail["messages"]] == [
            ("user", None),
            ("assistant", True),
        ]

    @pytest.mark.asyncio
    async def test_stream_foreign_conversation(self, client):
        current = (await client.get("/v1/conversations/current", headers=OWNER)).json()

        resp = await client.post(
            "/v1/conversations/stream",
            json={"conversation_id": current["id"], "user_message": "hi"},
            headers=STRANGER,
        )

        assert resp.status_code == 403
        assert resp.json()["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_save_ai_message(self, client):
        current = (await client.get("/v1/conversations/current", headers=OWNER)).json()

        resp = await client.post(
            "/v1/conversations/ai-message",
            json={"conversation_id": current["id"], "content": "部分回答", "isSuccess": False},
            headers=OWNER,
        )

        assert resp.status_code == 201
        assert resp.json()["is_success"] is False


class TestFileEndpoints:
    """测试文件端点"""

    @pytest.mark.asyncio
    async def test_upload_list_delete(self, client):
        kid = (await _create_knowledge(client))["id"]

        resp = await client.post(
            "/v1/files/upload",
            data={"knowledge_id": str(kid)},
            files={"file": ("说明.txt", "七天无理由退货".encode("utf-8"), "text/plain")},
            headers=OWNER,
        )
        assert resp.status_code == 201
        uploaded = resp.json()
        assert uploaded["vector_status"] == "indexed"
        assert uploaded["file_type"] == "TXT"

        resp = await client.get("/v1/files/search", params={"knowledge_id": kid, "filename": "说明"}, headers=OWNER)
        body = resp.json()
        assert body["pagination"]["total"] == 1
        assert body["search_term"] == "说明"

        resp = await client.delete(f"/v1/files/{uploaded['id']}", headers=OWNER)
        assert resp.status_code == 204
        resp = await client.get(f"/v1/files/{uploaded['id']}", headers=OWNER)
        assert resp.status_code == 404
        assert resp.json()["code"] == "FILE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_upload_empty_file(self, client):
        kid = (await _create_knowledge(client))["id"]

        resp = await client.post(
            "/v1/files/upload",
            data={"knowledge_id": str(kid)},
            files={"file": ("blank.txt", b"  ", "text/plain")},
            headers=OWNER,
        )

        assert resp.status_code == 400
        assert resp.json()["code"] == "EMPTY_CONTENT"
