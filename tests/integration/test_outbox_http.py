"""端到端测试：TransmissionActions + SolServerClient（httpx.MockTransport 模拟服务端）

测试内容：
1. 模拟失败 -> retry_failed -> 成功，幂等键不变，诊断条目完整
2. 202 pending -> 轮询完成
3. 429 Retry-After 推迟下一次发送
4. 服务端不可达 -> failed，诊断可导出 curl 命令
"""

import json

import httpx
import pytest
import pytest_asyncio

from solmobile.core.models import CreatorType, DeliveryOutcome, TransmissionStatus
from solmobile.core.store import StoreGroup
from solmobile.outbox.actions import TransmissionActions
from solmobile.outbox.config import OutboxConfig
from solmobile.transport.http_client import SIMULATE_STATUS_HEADER, SolServerClient

BASE_URL = "http://sol.test"


class FakeSolServer:
    """按请求头与路径模拟 SolServer 行为"""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.chat_override: httpx.Response | None = None
        self.poll_responses: dict[str, dict] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path == "/v1/chat":
            if self.chat_override is not None:
                return self.chat_override
            body = json.loads(request.content)
            simulate = request.headers.get(SIMULATE_STATUS_HEADER)
            if simulate == "500":
                return httpx.Response(500, json={"error": "simulated_failure"})
            if simulate == "202":
                return httpx.Response(
                    202,
                    json={"ok": True, "pending": True},
                    headers={"x-sol-transmission-id": "srv-pending"},
                )
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "transmissionId": f"srv-{body['clientRequestId'][-4:]}",
                    "assistant": f"Sol: {body['message']}",
                },
            )

        if request.url.path.startswith("/v1/transmissions/"):
            server_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=self.poll_responses[server_id])

        return httpx.Response(404, json={"error": "not_found"})

    def chat_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/v1/chat"]


@pytest.fixture
def server() -> FakeSolServer:
    return FakeSolServer()


@pytest_asyncio.fixture
async def client(server):
    http = httpx.AsyncClient(transport=httpx.MockTransport(server), follow_redirects=True)
    sol = SolServerClient(base_url=BASE_URL, api_key="it-key", client=http)
    yield sol
    await http.aclose()


@pytest.fixture
def actions(memory_store_group: StoreGroup, client) -> TransmissionActions:
    return TransmissionActions(
        memory_store_group, client, OutboxConfig(pending_fast_interval_s=0)
    )


async def _enqueue(actions, group, post_message, text):
    thread, message = await post_message(group, text)
    return await actions.enqueue_chat(thread, message)


class TestEndToEnd:
    async def test_fail_retry_succeed(
        self, actions, memory_store_group, server, client, post_message
    ):
        tx = await _enqueue(actions, memory_store_group, post_message, "/fail hello")

        await actions.process_queue()

        stored = await memory_store_group.outbox_store.get_transmission(tx.transmission_id)
        assert stored.status == TransmissionStatus.FAILED
        assert stored.delivery_attempts[0].status_code == 500
        assert stored.delivery_attempts[0].retryable_inferred is True

        assert await actions.retry_failed() == 1
        await actions.process_queue()

        stored = await memory_store_group.outbox_store.get_transmission(tx.transmission_id)
        assert stored.status == TransmissionStatus.SUCCEEDED
        assert [a.outcome for a in stored.delivery_attempts] == [
            DeliveryOutcome.FAILED,
            DeliveryOutcome.SUCCEEDED,
        ]

        chat = server.chat_requests()
        assert len(chat) == 2
        assert chat[0].headers[SIMULATE_STATUS_HEADER] == "500"
        assert SIMULATE_STATUS_HEADER not in chat[1].headers
        request_ids = {json.loads(r.content)["clientRequestId"] for r in chat}
        assert request_ids == {tx.request_id}

        messages = await memory_store_group.thread_store.list_messages("thread-0001")
        assert messages[-1].creator == CreatorType.ASSISTANT
        assert messages[-1].text == "Sol: /fail hello"

        entries = client.diagnostics.entries
        assert [e.status for e in entries] == [200, 500]
        assert entries[0].local_transmission_id == tx.transmission_id
        assert entries[0].attempt_id == stored.delivery_attempts[1].attempt_id
        assert entries[1].retryable_inferred is True
        assert "it-key" not in client.diagnostics.export_text()

    async def test_pending_then_polled(
        self, actions, memory_store_group, server, post_message
    ):
        server.poll_responses["srv-pending"] = {
            "ok": True,
            "transmission": {"id": "srv-pending", "status": "completed"},
            "pending": False,
            "assistant": "done thinking",
        }
        tx = await _enqueue(actions, memory_store_group, post_message, "/pending think")

        await actions.process_queue()

        stored = await memory_store_group.outbox_store.get_transmission(tx.transmission_id)
        assert stored.status == TransmissionStatus.SUCCEEDED
        assert [a.outcome for a in stored.delivery_attempts] == [
            DeliveryOutcome.PENDING,
            DeliveryOutcome.SUCCEEDED,
        ]
        messages = await memory_store_group.thread_store.list_messages("thread-0001")
        assert messages[-1].text == "done thinking"
        assert [r.method for r in server.requests] == ["POST", "GET"]

    async def test_rate_limited_defers_next_send(
        self, actions, memory_store_group, server, post_message
    ):
        server.chat_override = httpx.Response(
            429, json={"error": "rate_limited"}, headers={"retry-after": "120"}
        )
        tx = await _enqueue(actions, memory_store_group, post_message, "hello")

        await actions.process_queue()

        stored = await memory_store_group.outbox_store.get_transmission(tx.transmission_id)
        assert stored.status == TransmissionStatus.FAILED
        assert stored.delivery_attempts[0].retry_after_seconds == 120
        assert stored.delivery_attempts[0].retryable_inferred is True

        server.chat_override = None
        await actions.retry_failed()
        await actions.process_queue()

        assert len(server.chat_requests()) == 1
        stored = await memory_store_group.outbox_store.get_transmission(tx.transmission_id)
        assert stored.status == TransmissionStatus.QUEUED

    async def test_budget_exceeded_stops_network_sends(
        self, actions, memory_store_group, server, post_message
    ):
        server.chat_override = httpx.Response(
            422, json={"error": "budget_exceeded", "blocked_until": "2099-01-01T00:00:00Z"}
        )
        await _enqueue(actions, memory_store_group, post_message, "one")
        second = await _enqueue(actions, memory_store_group, post_message, "two")

        await actions.process_queue()
        await actions.process_queue()

        assert len(server.chat_requests()) == 1
        stored = await memory_store_group.outbox_store.get_transmission(second.transmission_id)
        assert stored.status == TransmissionStatus.FAILED
        assert stored.last_error == "budget_exceeded"


class TestUnreachableServer:
    async def test_network_failure_recorded(self, memory_store_group, post_message):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        client = SolServerClient(base_url=BASE_URL, api_key="it-key", client=http)
        actions = TransmissionActions(memory_store_group, client)
        tx = await _enqueue(actions, memory_store_group, post_message, "anyone there?")

        await actions.process_queue()
        await http.aclose()

        stored = await memory_store_group.outbox_store.get_transmission(tx.transmission_id)
        assert stored.status == TransmissionStatus.FAILED
        assert stored.delivery_attempts[0].status_code == -1
        assert stored.delivery_attempts[0].retryable_inferred is True

        failure = client.diagnostics.last_failure_entry()
        assert failure is not None
        assert failure.error_type == "NetworkError"
        command = client.diagnostics.curl_command(failure)
        assert command.startswith(f"curl -X POST '{BASE_URL}/v1/chat'")
        assert "<API_KEY>" in command
        assert "it-key" not in command
