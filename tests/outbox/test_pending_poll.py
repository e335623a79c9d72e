"""202 pending 与轮询测试

测试内容：
1. polling transport + 服务端 id -> pending，轮询完成后追加 assistant 消息
2. 无 polling 能力或无服务端 id -> 占位文本直接成功
3. 轮询间隔、可重试 / 不可重试的轮询失败、服务端报告失败
"""

from datetime import UTC, datetime, timedelta

from solmobile.core.models import (
    CreatorType,
    DeliveryAttempt,
    DeliveryAttemptSource,
    DeliveryOutcome,
    TransmissionStatus,
)
from solmobile.outbox.actions import (
    POLLING_UNSUPPORTED_ERROR,
    SERVER_FAILED_ERROR,
    TransmissionActions,
    active_poll_attempt,
    pending_since,
    poll_interval_s,
)
from solmobile.outbox.config import OutboxConfig
from solmobile.transport.exceptions import HTTPStatusError, NetworkError
from solmobile.transport.http_client import PENDING_TEXT
from solmobile.transport.protocols import (
    ChatPollResponse,
    ChatResponse,
    DiagnosticsContext,
)
from solmobile.transport.scripted import ScriptedTransport

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _pending_response(server_tx_id: str | None = "srv-1") -> ChatResponse:
    return ChatResponse(
        text=PENDING_TEXT,
        status_code=202,
        transmission_id=server_tx_id,
        pending=True,
    )


class SendOnlyTransport:
    """只实现 send 的 transport（无 polling 能力）"""

    def __init__(self, response: ChatResponse) -> None:
        self.response = response
        self.sent = []

    async def send(self, envelope, diagnostics: DiagnosticsContext | None = None) -> ChatResponse:
        self.sent.append(envelope)
        return self.response


async def _enqueue(actions, group, post_message, text="/pending work"):
    thread, message = await post_message(group, text)
    return await actions.enqueue_chat(thread, message)


async def _get(group, tx_id):
    return await group.outbox_store.get_transmission(tx_id)


class TestPendingWithPolling:
    async def test_send_202_goes_pending(
        self, actions, memory_store_group, transport, post_message
    ):
        transport.script_send(_pending_response())
        tx = await _enqueue(actions, memory_store_group, post_message)

        await actions.process_queue()

        stored = await _get(memory_store_group, tx.transmission_id)
        assert stored.status == TransmissionStatus.PENDING
        send_attempt = stored.delivery_attempts[0]
        assert send_attempt.outcome == DeliveryOutcome.PENDING
        assert send_attempt.server_transmission_id == "srv-1"
        # 同一轮内已轮询一次（默认脚本仍为 pending）
        assert transport.polled == ["srv-1"]
        assert stored.delivery_attempts[-1].source == DeliveryAttemptSource.POLL
        assert active_poll_attempt(stored.delivery_attempts) is not None

        messages = await memory_store_group.thread_store.list_messages("thread-0001")
        assert len(messages) == 1

    async def test_poll_completes(self, actions, memory_store_group, transport, post_message):
        transport.script_send(_pending_response())
        transport.script_poll(
            ChatPollResponse(pending=True, server_status="created", status_code=200),
            ChatPollResponse(
                pending=False,
                assistant="final answer",
                server_status="completed",
                status_code=200,
            ),
        )
        tx = await _enqueue(actions, memory_store_group, post_message)

        await actions.process_queue()
        assert (await _get(memory_store_group, tx.transmission_id)).status == TransmissionStatus.PENDING

        await actions.process_queue()

        stored = await _get(memory_store_group, tx.transmission_id)
        assert stored.status == TransmissionStatus.SUCCEEDED
        assert stored.delivery_attempts[-1].outcome == DeliveryOutcome.SUCCEEDED
        messages = await memory_store_group.thread_store.list_messages("thread-0001")
        assert messages[-1].creator == CreatorType.ASSISTANT
        assert messages[-1].text == "final answer"
        assert messages[-1].server_transmission_id == "srv-1"

    async def test_poll_interval_respected(self, memory_store_group, post_message):
        transport = ScriptedTransport().script_send(_pending_response())
        actions = TransmissionActions(
            memory_store_group, transport, OutboxConfig(pending_fast_interval_s=60)
        )
        await _enqueue(actions, memory_store_group, post_message)

        await actions.process_queue()
        await actions.process_queue()

        assert transport.polled == ["srv-1"]

    async def test_poll_limit_zero_skips_polling(
        self, actions, memory_store_group, transport, post_message
    ):
        transport.script_send(_pending_response())
        await _enqueue(actions, memory_store_group, post_message)

        await actions.process_queue(poll_limit=0)

        assert transport.polled == []

    async def test_server_reports_failed(
        self, actions, memory_store_group, transport, post_message
    ):
        transport.script_send(_pending_response())
        transport.script_poll(ChatPollResponse(pending=False, server_status="failed", status_code=200))
        tx = await _enqueue(actions, memory_store_group, post_message)

        await actions.process_queue()

        stored = await _get(memory_store_group, tx.transmission_id)
        assert stored.status == TransmissionStatus.FAILED
        assert stored.last_error == SERVER_FAILED_ERROR

    async def test_retryable_poll_error_stays_pending(
        self, actions, memory_store_group, transport, post_message
    ):
        transport.script_send(_pending_response())
        transport.script_poll(
            NetworkError("http://server", ConnectionError("down")),
            ChatPollResponse(pending=False, assistant="ok", server_status="completed", status_code=200),
        )
        tx = await _enqueue(actions, memory_store_group, post_message)

        await actions.process_queue()

        stored = await _get(memory_store_group, tx.transmission_id)
        assert stored.status == TransmissionStatus.PENDING
        last = stored.delivery_attempts[-1]
        assert last.outcome == DeliveryOutcome.FAILED
        assert last.retryable_inferred is True
        assert active_poll_attempt(stored.delivery_attempts) is last

        await actions.process_queue()
        assert (await _get(memory_store_group, tx.transmission_id)).status == TransmissionStatus.SUCCEEDED

    async def test_terminal_poll_error_fails(
        self, actions, memory_store_group, transport, post_message
    ):
        transport.script_send(_pending_response())
        transport.script_poll(HTTPStatusError(404, '{"error": "not_found"}'))
        tx = await _enqueue(actions, memory_store_group, post_message)

        await actions.process_queue()

        stored = await _get(memory_store_group, tx.transmission_id)
        assert stored.status == TransmissionStatus.FAILED
        assert stored.delivery_attempts[-1].status_code == 404

    async def test_pending_without_polling_transport_fails(
        self, actions, memory_store_group, transport, post_message
    ):
        """pending 记录交给不支持 polling 的 transport 处理时转为 failed"""
        transport.script_send(_pending_response())
        tx = await _enqueue(actions, memory_store_group, post_message)
        await actions.process_queue(poll_limit=0)

        send_only = TransmissionActions(
            memory_store_group, SendOnlyTransport(_pending_response()), OutboxConfig()
        )
        await send_only.process_queue()

        stored = await _get(memory_store_group, tx.transmission_id)
        assert stored.status == TransmissionStatus.FAILED
        assert stored.last_error == POLLING_UNSUPPORTED_ERROR


class TestPendingWithoutPolling:
    async def test_send_only_transport_succeeds_with_placeholder(
        self, memory_store_group, post_message
    ):
        transport = SendOnlyTransport(_pending_response())
        actions = TransmissionActions(memory_store_group, transport)
        tx = await _enqueue(actions, memory_store_group, post_message)

        await actions.process_queue()

        stored = await _get(memory_store_group, tx.transmission_id)
        assert stored.status == TransmissionStatus.SUCCEEDED
        messages = await memory_store_group.thread_store.list_messages("thread-0001")
        assert messages[-1].text == PENDING_TEXT

    async def test_missing_server_id_succeeds_with_placeholder(
        self, actions, memory_store_group, transport, post_message
    ):
        transport.script_send(_pending_response(server_tx_id=None))
        tx = await _enqueue(actions, memory_store_group, post_message)

        await actions.process_queue()

        assert (await _get(memory_store_group, tx.transmission_id)).status == TransmissionStatus.SUCCEEDED
        assert transport.polled == []


class TestActivePollAttempt:
    def test_empty(self):
        assert active_poll_attempt([]) is None


def _attempt(seconds: int, outcome: DeliveryOutcome, source=DeliveryAttemptSource.POLL, retryable=None):
    return DeliveryAttempt(
        attempt_id=str(seconds),
        transmission_id="tx-1",
        created_at=T0 + timedelta(seconds=seconds),
        status_code=200,
        outcome=outcome,
        source=source,
        retryable_inferred=retryable,
    )


class TestPendingSince:
    def test_trailing_pending_streak(self):
        attempts = [
            _attempt(0, DeliveryOutcome.PENDING, source=DeliveryAttemptSource.SEND),
            _attempt(5, DeliveryOutcome.FAILED, retryable=True),
            _attempt(10, DeliveryOutcome.PENDING),
            _attempt(15, DeliveryOutcome.PENDING),
        ]
        assert pending_since(attempts) == T0 + timedelta(seconds=10)

    def test_retryable_poll_failure_uses_last_pending(self):
        attempts = [
            _attempt(0, DeliveryOutcome.PENDING, source=DeliveryAttemptSource.SEND),
            _attempt(5, DeliveryOutcome.FAILED, retryable=True),
        ]
        assert pending_since(attempts) == T0

    def test_inactive(self):
        assert pending_since([_attempt(0, DeliveryOutcome.FAILED, retryable=False)]) is None


class TestPollSchedule:
    def test_fast_linear_slow(self):
        config = OutboxConfig()
        assert poll_interval_s(config, 5, 3) == 2
        assert poll_interval_s(config, 30, 1) == 2
        assert poll_interval_s(config, 30, 4) == 8
        assert poll_interval_s(config, 30, 50) == 20
        assert poll_interval_s(config, 61, 1) == 20

    async def test_slow_phase_backs_off(self, memory_store_group, post_message):
        transport = ScriptedTransport()
        actions = TransmissionActions(memory_store_group, transport, OutboxConfig())
        tx = await _enqueue(actions, memory_store_group, post_message)
        now = datetime.now(UTC)
        for seconds, outcome, source in (
            (120, DeliveryOutcome.PENDING, DeliveryAttemptSource.SEND),
            (10, DeliveryOutcome.PENDING, DeliveryAttemptSource.POLL),
        ):
            await memory_store_group.outbox_store.append_attempt(
                DeliveryAttempt(
                    attempt_id=str(seconds),
                    transmission_id=tx.transmission_id,
                    created_at=now - timedelta(seconds=seconds),
                    status_code=202,
                    outcome=outcome,
                    source=source,
                    server_transmission_id="srv-1",
                )
            )
        await memory_store_group.outbox_store.update_transmission_status(
            tx.transmission_id, TransmissionStatus.PENDING, now, None
        )
        await memory_store_group.conn.commit()

        await actions.process_queue()

        # pending 已 120 秒，进入慢速阶段；距上次轮询仅 10 秒
        assert transport.polled == []


class TestPollFirst:
    async def _pending_then_queued(self, actions, group, transport, post_message):
        transport.script_send(_pending_response())
        await _enqueue(actions, group, post_message)
        await actions.process_queue(poll_limit=0)
        await _enqueue(actions, group, post_message, text="next")

        sends_at_poll: list[int] = []

        def record(transmission_id, diagnostics):
            sends_at_poll.append(transport.send_count)
            return ChatPollResponse(pending=True, server_status="created", status_code=200)

        transport.script_poll(record)
        return sends_at_poll

    async def test_polls_before_sending(self, actions, memory_store_group, transport, post_message):
        sends_at_poll = await self._pending_then_queued(
            actions, memory_store_group, transport, post_message
        )

        await actions.process_queue()

        assert sends_at_poll == [1]
        assert transport.send_count == 2
        assert transport.polled == ["srv-1"]

    async def test_poll_after_send_when_disabled(
        self, actions, memory_store_group, transport, post_message
    ):
        sends_at_poll = await self._pending_then_queued(
            actions, memory_store_group, transport, post_message
        )

        await actions.process_queue(poll_first=False)

        assert sends_at_poll == [2]
