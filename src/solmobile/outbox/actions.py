"""TransmissionActions -- outbox 引擎

负责 Packet/Transmission 创建、单飞投递、结果对账与失败重排：
1. enqueue_chat: 创建 Packet + queued Transmission（无网络）
2. process_queue: 恢复中断的 sending，先轮询 pending，再发送队首（预算封禁期间本地失败）
3. retry_failed: failed -> queued，清除调试失败标记

网络等待前只快照 ID，等待后按 ID 重新读取记录再写入；
状态写入以期望的旧状态做 compare-and-set。
"""

import asyncio
import json
import time
from datetime import UTC, datetime, timedelta

import structlog
from ulid import ULID

from solmobile.core.config import DEBUG_FAIL_PREFIX, short_id
from solmobile.core.models import (
    CreatorType,
    DeliveryAttempt,
    DeliveryAttemptSource,
    DeliveryOutcome,
    Message,
    Packet,
    PacketEnvelope,
    PacketType,
    Thread,
    Transmission,
    TransmissionStatus,
)
from solmobile.core.store import StoreGroup
from solmobile.core.store.transaction import (
    TransmissionStatusConflictError,
    clear_memento_drafts,
    create_packet_and_transmission,
    record_attempt_and_update_status,
    requeue_failed,
    update_status,
)
from solmobile.transport import (
    MAX_RETRY_AFTER_S,
    BadResponseError,
    ChatPollResponse,
    ChatResponse,
    ChatTransport,
    ChatTransportMementoDecision,
    ChatTransportPolling,
    DiagnosticsContext,
    HTTPStatusError,
    MementoDecision,
    MementoDecisionResult,
    RetryPolicy,
    SimulatedFailureError,
    UnsupportedTransportError,
)

from .budget import (
    BUDGET_BLOCKED_ATTEMPT_ERROR,
    BUDGET_EXCEEDED_ERROR,
    BUDGET_STATUS_CODE,
    BudgetGate,
    parse_budget_exceeded,
)
from .config import OutboxConfig

log = structlog.get_logger()

STALE_SENDING_ERROR = "Recovered stale sending transmission"
MISSING_TEXT_ERROR = "Missing message text for send"
MISSING_PACKET_ERROR = "Missing packet for transmission"
NO_ACTIVE_POLL_ERROR = "Pending transmission has no active poll attempt"
NO_SERVER_ID_ERROR = "Pending transmission has no server transmission id"
POLLING_UNSUPPORTED_ERROR = "Transport does not support polling"
SERVER_FAILED_ERROR = "Server reported transmission failed"
NO_ASSISTANT_TEXT = "(no assistant text)"


def _now() -> datetime:
    return datetime.now(UTC)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _status_code_of(error: Exception) -> int:
    """异常对应的 HTTP 状态码，无 HTTP 响应时为 -1"""
    if isinstance(error, HTTPStatusError):
        return error.code
    if isinstance(error, SimulatedFailureError):
        return SimulatedFailureError.status_code
    if isinstance(error, BadResponseError) and error.status_code is not None:
        return error.status_code
    return -1


def _describe_error(error: Exception) -> str:
    """人类可读的错误描述，保证非空"""
    text = str(error).strip()
    return text if text else type(error).__name__


def _evidence_json(response: ChatResponse | ChatPollResponse) -> str | None:
    """把 evidence 相关字段序列化为 JSON，全部缺省时返回 None"""
    data = {}
    if response.evidence_summary is not None:
        data["evidenceSummary"] = response.evidence_summary.model_dump(by_alias=True)
    if response.evidence is not None:
        data["evidence"] = response.evidence.model_dump(by_alias=True, exclude_none=True)
    if response.evidence_warnings:
        data["evidenceWarnings"] = [
            w.model_dump(by_alias=True, exclude_none=True) for w in response.evidence_warnings
        ]
    if response.output_envelope is not None:
        data["outputEnvelope"] = response.output_envelope.model_dump(exclude_none=True)
    return json.dumps(data, ensure_ascii=False) if data else None


def _memento_fields(response: ChatResponse | ChatPollResponse) -> tuple[str, str, str] | None:
    memento = response.thread_memento
    if memento is None:
        return None
    return memento.id, memento.created_at, memento.summary()


def active_poll_attempt(attempts: list[DeliveryAttempt]) -> DeliveryAttempt | None:
    """从投递台账推导当前有效的轮询尝试

    最后一条为 pending，或最后一条是可重试的失败 poll 时有效。
    """
    if not attempts:
        return None
    last = attempts[-1]
    if last.outcome == DeliveryOutcome.PENDING:
        return last
    if (
        last.source == DeliveryAttemptSource.POLL
        and last.outcome == DeliveryOutcome.FAILED
        and last.retryable_inferred is True
    ):
        return last
    return None


def pending_since(attempts: list[DeliveryAttempt]) -> datetime | None:
    """当前 pending 阶段的起始时间，无有效轮询尝试时为 None

    最后一条为 pending 时取末尾连续 pending 的第一条；
    最后一条是可重试的失败 poll 时取最近一条 pending。
    """
    last = active_poll_attempt(attempts)
    if last is None:
        return None
    if last.outcome == DeliveryOutcome.PENDING:
        since = last.created_at
        for attempt in reversed(attempts):
            if attempt.outcome != DeliveryOutcome.PENDING:
                break
            since = attempt.created_at
        return since
    for attempt in reversed(attempts):
        if attempt.outcome == DeliveryOutcome.PENDING:
            return attempt.created_at
    return last.created_at


def poll_interval_s(config: OutboxConfig, pending_age_s: float, poll_count: int) -> float:
    """按 pending 时长计算轮询间隔：快速 -> 线性增长 -> 慢速"""
    if pending_age_s <= config.pending_linear_start_s:
        return config.pending_fast_interval_s
    if pending_age_s <= config.pending_slow_threshold_s:
        steps = max(0, poll_count - 1)
        interval = config.pending_fast_interval_s + steps * config.pending_linear_step_s
        return min(interval, config.pending_slow_interval_s)
    return config.pending_slow_interval_s


def _server_transmission_id(attempts: list[DeliveryAttempt]) -> str | None:
    for attempt in reversed(attempts):
        if attempt.server_transmission_id:
            return attempt.server_transmission_id
    return None


class TransmissionActions:
    """Outbox 引擎

    单飞投递：系统内同一时刻最多一个 Transmission 处于 sending。
    同一实例上重叠的 process_queue 调用直接跳过。
    """

    def __init__(
        self,
        store_group: StoreGroup,
        transport: ChatTransport,
        config: OutboxConfig | None = None,
        budget: BudgetGate | None = None,
    ) -> None:
        self._stores = store_group
        self._transport = transport
        self._config = config or OutboxConfig()
        self._budget = budget or BudgetGate(store_group.conn, store_group.budget_store)
        self._lock = asyncio.Lock()

    @property
    def transport(self) -> ChatTransport:
        return self._transport

    @property
    def budget(self) -> BudgetGate:
        return self._budget

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    # ---- enqueue ----

    def _should_simulate_failure(self, text: str, simulate_failure: bool | None) -> bool:
        if simulate_failure is not None:
            return simulate_failure
        if not self._config.debug_failures_enabled:
            return False
        return text.strip().lower().startswith(DEBUG_FAIL_PREFIX.lower())

    async def enqueue_chat(
        self,
        thread: Thread,
        user_message: Message,
        simulate_failure: bool | None = None,
    ) -> Transmission | None:
        """为用户消息创建 Packet 和 queued Transmission（原子提交，无网络）

        Args:
            thread: 消息所属 Thread
            user_message: 已追加到 Thread 的用户消息
            simulate_failure: 显式的调试失败标记；为 None 时按 /fail 前缀判定

        Returns:
            新建的 Transmission；持久化失败时返回 None（仅记录日志）
        """
        fail = self._should_simulate_failure(user_message.text, simulate_failure)
        now = _now()

        packet = Packet(
            packet_id=str(ULID()),
            packet_type=PacketType.CHAT_FAIL if fail else PacketType.CHAT,
            thread_id=thread.thread_id,
            message_ids=[user_message.message_id],
        )
        transmission = Transmission(
            transmission_id=str(ULID()),
            request_id=packet.packet_id,
            status=TransmissionStatus.QUEUED,
            packet_id=packet.packet_id,
            created_at=now,
            updated_at=now,
        )

        try:
            await create_packet_and_transmission(
                self._stores.conn,
                self._stores.outbox_store,
                packet,
                transmission,
            )
        except Exception as e:
            log.error(
                "enqueue_chat_failed",
                thread_id=short_id(thread.thread_id),
                message_id=short_id(user_message.message_id),
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        log.info(
            "transmission_enqueued",
            tx_id=short_id(transmission.transmission_id),
            packet_id=short_id(packet.packet_id),
            thread_id=short_id(thread.thread_id),
            packet_type=packet.packet_type.value,
        )
        return transmission

    # ---- process ----

    async def process_queue(self, poll_limit: int | None = None, poll_first: bool = True) -> None:
        """处理一轮 outbox（不抛出异常，可放在定时循环中调用）

        poll_first 时先轮询已有的 pending 再发送队首，发送后只为新产生的
        pending 补一次轮询；同一轮内每条 pending 最多轮询一次。

        Args:
            poll_limit: 本轮最多轮询的 pending 数量；为 None 时取配置值
            poll_first: 是否在发送前先轮询
        """
        if self._lock.locked():
            log.debug("process_queue_skipped_busy")
            return

        async with self._lock:
            try:
                await self._recover_stale_sending()
                limit = self._config.poll_limit if poll_limit is None else poll_limit
                polled: set[str] = set()
                if poll_first and limit > 0:
                    await self._poll_pending(limit, polled)
                await self._send_head()
                trailing = min(1, limit) if poll_first else limit
                if trailing > 0:
                    await self._poll_pending(trailing, polled)
            except Exception as e:
                log.error(
                    "process_queue_failed",
                    error_type=type(e).__name__,
                    error=str(e),
                )

    async def _recover_stale_sending(self) -> None:
        """sending 超过阈值未更新的记录视为中断，转为 failed"""
        outbox = self._stores.outbox_store
        threshold = timedelta(seconds=self._config.sending_stale_threshold_s)
        now = _now()

        for tx in await outbox.list_transmissions(status=TransmissionStatus.SENDING):
            if now - tx.updated_at < threshold:
                continue
            try:
                await update_status(
                    self._stores.conn,
                    outbox,
                    tx.transmission_id,
                    TransmissionStatus.FAILED,
                    expected_status=TransmissionStatus.SENDING,
                    last_error=STALE_SENDING_ERROR,
                )
            except TransmissionStatusConflictError:
                continue
            log.warning(
                "stale_sending_recovered",
                tx_id=short_id(tx.transmission_id),
                age_s=int((now - tx.updated_at).total_seconds()),
            )

    async def _fail_without_send(
        self,
        transmission_id: str,
        expected_status: TransmissionStatus,
        reason: str,
        server_transmission_id: str | None = None,
        status_code: int = -1,
        source: DeliveryAttemptSource = DeliveryAttemptSource.TERMINAL,
        attempt_error: str | None = None,
    ) -> None:
        """客户端判定失败：写一条不可重试的尝试记录并转为 failed

        Args:
            reason: 写入 Transmission.last_error
            attempt_error: 写入尝试记录的错误描述；为 None 时同 reason
        """
        attempt = DeliveryAttempt(
            attempt_id=str(ULID()),
            transmission_id=transmission_id,
            created_at=_now(),
            status_code=status_code,
            outcome=DeliveryOutcome.FAILED,
            source=source,
            error_message=attempt_error or reason,
            server_transmission_id=server_transmission_id,
            retryable_inferred=False,
        )
        try:
            await record_attempt_and_update_status(
                self._stores.conn,
                self._stores.outbox_store,
                attempt,
                TransmissionStatus.FAILED,
                expected_status=expected_status,
                last_error=reason,
            )
        except TransmissionStatusConflictError:
            log.info("fail_skipped_state_conflict", tx_id=short_id(transmission_id))
            return
        log.warning(
            "transmission_failed_without_send",
            tx_id=short_id(transmission_id),
            reason=reason,
        )

    def _retry_after_pending(self, attempts: list[DeliveryAttempt], now: datetime) -> float:
        """最后一次 send 尝试的 Retry-After 剩余秒数（无则为 0）"""
        sends = [a for a in attempts if a.source == DeliveryAttemptSource.SEND]
        if not sends or not sends[-1].retry_after_seconds:
            return 0.0
        last = sends[-1]
        wait = min(last.retry_after_seconds, MAX_RETRY_AFTER_S)
        not_before = last.created_at + timedelta(seconds=wait)
        return max(0.0, (not_before - now).total_seconds())

    async def _send_head(self) -> None:
        """发送队首的 queued Transmission（每轮最多一条）"""
        stores = self._stores
        outbox = stores.outbox_store

        queued = await outbox.list_transmissions(status=TransmissionStatus.QUEUED)
        if not queued:
            return

        if await outbox.list_transmissions(status=TransmissionStatus.SENDING):
            log.info("process_queue_skipped_in_flight", queued=len(queued))
            return

        head = queued[0]

        # 网络等待前快照
        tx_id = head.transmission_id
        request_id = head.request_id
        attempts = head.delivery_attempts

        packet = await outbox.get_packet(head.packet_id)
        if packet is None:
            await self._fail_without_send(tx_id, TransmissionStatus.QUEUED, MISSING_PACKET_ERROR)
            return

        packet_id = packet.packet_id
        packet_type = packet.packet_type
        thread_id = packet.thread_id
        message_ids = list(packet.message_ids)
        first_message_id = message_ids[0] if message_ids else None

        send_count = sum(1 for a in attempts if a.source == DeliveryAttemptSource.SEND)
        if send_count >= self._config.max_send_attempts:
            await self._fail_without_send(
                tx_id,
                TransmissionStatus.QUEUED,
                f"Max retry attempts exceeded ({self._config.max_send_attempts})",
            )
            return

        wait_s = self._retry_after_pending(attempts, _now())
        if wait_s > 0:
            log.info("send_deferred_retry_after", tx_id=short_id(tx_id), wait_s=round(wait_s, 1))
            return

        if await self._budget.is_blocked_now():
            await self._fail_without_send(
                tx_id,
                TransmissionStatus.QUEUED,
                BUDGET_EXCEEDED_ERROR,
                status_code=BUDGET_STATUS_CODE,
                source=DeliveryAttemptSource.SEND,
                attempt_error=BUDGET_BLOCKED_ATTEMPT_ERROR,
            )
            log.info("send_blocked_budget", tx_id=short_id(tx_id))
            return

        try:
            await update_status(
                stores.conn,
                outbox,
                tx_id,
                TransmissionStatus.SENDING,
                expected_status=TransmissionStatus.QUEUED,
                last_error=None,
            )
        except TransmissionStatusConflictError:
            log.info("send_skipped_state_conflict", tx_id=short_id(tx_id))
            return

        message = (
            await stores.thread_store.get_message(first_message_id)
            if first_message_id
            else None
        )
        if message is None or not message.text.strip():
            await self._fail_without_send(tx_id, TransmissionStatus.SENDING, MISSING_TEXT_ERROR)
            return

        envelope = PacketEnvelope(
            packet_id=packet_id,
            packet_type=packet_type,
            thread_id=thread_id,
            message_ids=message_ids,
            message_text=message.text,
            request_id=request_id,
            context_refs_json=packet.context_refs_json,
            payload_json=packet.payload_json,
        )
        attempt_id = str(ULID())
        ctx = DiagnosticsContext(
            attempt_id=attempt_id,
            thread_id=thread_id,
            local_transmission_id=tx_id,
        )

        log.info(
            "transmission_send_start",
            tx_id=short_id(tx_id),
            packet_id=short_id(packet_id),
            thread_id=short_id(thread_id),
            packet_type=packet_type.value,
            attempt=send_count + 1,
        )
        start = time.monotonic()

        try:
            response = await self._transport.send(envelope, diagnostics=ctx)
        except Exception as e:
            await self._record_send_failure(tx_id, attempt_id, e, _elapsed_ms(start))
            return

        await self._record_send_success(tx_id, thread_id, attempt_id, response, _elapsed_ms(start))

    async def _record_send_failure(
        self,
        tx_id: str,
        attempt_id: str,
        error: Exception,
        elapsed_ms: int,
    ) -> None:
        stores = self._stores
        tx = await stores.outbox_store.get_transmission(tx_id)
        if tx is None:
            log.info("transmission_gone_after_send", tx_id=short_id(tx_id))
            return

        decision = RetryPolicy.classify_exception(error)
        reason = _describe_error(error)
        if isinstance(error, HTTPStatusError) and error.code == BUDGET_STATUS_CODE:
            info = parse_budget_exceeded(error.body)
            if info is not None:
                await self._budget.apply_budget_exceeded(info.blocked_until)

        attempt = DeliveryAttempt(
            attempt_id=attempt_id,
            transmission_id=tx_id,
            created_at=_now(),
            status_code=_status_code_of(error),
            outcome=DeliveryOutcome.FAILED,
            source=DeliveryAttemptSource.SEND,
            error_message=reason,
            server_transmission_id=decision.transmission_id,
            retryable_inferred=decision.retryable,
            retry_after_seconds=decision.retry_after_seconds,
            final_url=error.final_url if isinstance(error, HTTPStatusError) else None,
        )
        try:
            await record_attempt_and_update_status(
                stores.conn,
                stores.outbox_store,
                attempt,
                TransmissionStatus.FAILED,
                expected_status=TransmissionStatus.SENDING,
                last_error=reason,
            )
        except TransmissionStatusConflictError:
            log.warning("send_failure_skipped_state_conflict", tx_id=short_id(tx_id))
            return

        log.warning(
            "transmission_send_failed",
            tx_id=short_id(tx_id),
            error_type=type(error).__name__,
            status_code=attempt.status_code,
            retryable=decision.retryable,
            retryable_source=decision.source.value,
            elapsed_ms=elapsed_ms,
        )

    async def _record_send_success(
        self,
        tx_id: str,
        thread_id: str,
        attempt_id: str,
        response: ChatResponse,
        elapsed_ms: int,
    ) -> None:
        stores = self._stores
        tx = await stores.outbox_store.get_transmission(tx_id)
        if tx is None:
            log.info("transmission_gone_after_send", tx_id=short_id(tx_id))
            return

        now = _now()
        server_tx_id = response.transmission_id
        final_url = response.response_info.final_url if response.response_info else None

        if (
            response.pending
            and server_tx_id
            and isinstance(self._transport, ChatTransportPolling)
        ):
            attempt = DeliveryAttempt(
                attempt_id=attempt_id,
                transmission_id=tx_id,
                created_at=now,
                status_code=response.status_code,
                outcome=DeliveryOutcome.PENDING,
                source=DeliveryAttemptSource.SEND,
                server_transmission_id=server_tx_id,
                final_url=final_url,
            )
            try:
                await record_attempt_and_update_status(
                    stores.conn,
                    stores.outbox_store,
                    attempt,
                    TransmissionStatus.PENDING,
                    expected_status=TransmissionStatus.SENDING,
                    memento=_memento_fields(response),
                )
            except TransmissionStatusConflictError:
                log.warning("send_pending_skipped_state_conflict", tx_id=short_id(tx_id))
                return
            log.info(
                "transmission_pending",
                tx_id=short_id(tx_id),
                server_tx_id=short_id(server_tx_id),
                elapsed_ms=elapsed_ms,
            )
            return

        thread = await stores.thread_store.get_thread(thread_id)
        assistant = None
        if thread is not None:
            assistant = Message(
                message_id=str(ULID()),
                thread_id=thread_id,
                creator=CreatorType.ASSISTANT,
                text=response.text,
                created_at=now,
                server_transmission_id=server_tx_id,
                evidence_json=_evidence_json(response),
            )

        attempt = DeliveryAttempt(
            attempt_id=attempt_id,
            transmission_id=tx_id,
            created_at=now,
            status_code=response.status_code,
            outcome=DeliveryOutcome.SUCCEEDED,
            source=DeliveryAttemptSource.SEND,
            server_transmission_id=server_tx_id,
            final_url=final_url,
        )
        try:
            await record_attempt_and_update_status(
                stores.conn,
                stores.outbox_store,
                attempt,
                TransmissionStatus.SUCCEEDED,
                expected_status=TransmissionStatus.SENDING,
                assistant_message=assistant,
                thread_store=stores.thread_store,
                memento=_memento_fields(response),
            )
        except TransmissionStatusConflictError:
            log.warning("send_success_skipped_state_conflict", tx_id=short_id(tx_id))
            return

        log.info(
            "transmission_succeeded",
            tx_id=short_id(tx_id),
            thread_id=short_id(thread_id),
            status_code=response.status_code,
            pending=response.pending,
            assistant_appended=assistant is not None,
            elapsed_ms=elapsed_ms,
        )

    # ---- pending polling ----

    async def _poll_pending(self, limit: int, polled: set[str]) -> None:
        pending = await self._stores.outbox_store.list_transmissions(
            status=TransmissionStatus.PENDING
        )
        candidates = [tx for tx in pending if tx.transmission_id not in polled]
        for tx in candidates[:limit]:
            polled.add(tx.transmission_id)
            await self._poll_one(tx)

    async def _poll_one(self, tx: Transmission) -> None:
        """轮询一条 pending Transmission"""
        stores = self._stores
        tx_id = tx.transmission_id
        attempts = tx.delivery_attempts

        active = active_poll_attempt(attempts)
        if active is None:
            await self._fail_without_send(tx_id, TransmissionStatus.PENDING, NO_ACTIVE_POLL_ERROR)
            return

        server_tx_id = active.server_transmission_id or _server_transmission_id(attempts)
        if not server_tx_id:
            await self._fail_without_send(tx_id, TransmissionStatus.PENDING, NO_SERVER_ID_ERROR)
            return

        if not isinstance(self._transport, ChatTransportPolling):
            await self._fail_without_send(
                tx_id,
                TransmissionStatus.PENDING,
                POLLING_UNSUPPORTED_ERROR,
                server_transmission_id=server_tx_id,
            )
            return

        polls = [a for a in attempts if a.source == DeliveryAttemptSource.POLL]
        since = pending_since(attempts)
        if polls and since is not None:
            now = _now()
            wait_s = poll_interval_s(
                self._config,
                (now - since).total_seconds(),
                len(polls),
            )
            if (now - polls[-1].created_at).total_seconds() < wait_s:
                log.debug("poll_backoff", tx_id=short_id(tx_id), wait_s=wait_s)
                return

        packet = await stores.outbox_store.get_packet(tx.packet_id)
        thread_id = packet.thread_id if packet is not None else None

        attempt_id = str(ULID())
        ctx = DiagnosticsContext(
            attempt_id=attempt_id,
            thread_id=thread_id,
            local_transmission_id=tx_id,
        )
        start = time.monotonic()

        try:
            result = await self._transport.poll(server_tx_id, diagnostics=ctx)
        except Exception as e:
            await self._record_poll_failure(tx_id, server_tx_id, attempt_id, e)
            return

        fresh = await stores.outbox_store.get_transmission(tx_id)
        if fresh is None or fresh.status != TransmissionStatus.PENDING:
            log.info("poll_result_discarded", tx_id=short_id(tx_id))
            return

        now = _now()
        final_url = result.response_info.final_url if result.response_info else None

        if result.pending:
            attempt = DeliveryAttempt(
                attempt_id=attempt_id,
                transmission_id=tx_id,
                created_at=now,
                status_code=result.status_code,
                outcome=DeliveryOutcome.PENDING,
                source=DeliveryAttemptSource.POLL,
                server_transmission_id=server_tx_id,
                final_url=final_url,
            )
            await record_attempt_and_update_status(
                stores.conn,
                stores.outbox_store,
                attempt,
                None,
                expected_status=None,
                memento=_memento_fields(result),
            )
            log.debug(
                "transmission_still_pending",
                tx_id=short_id(tx_id),
                server_status=result.server_status,
                elapsed_ms=_elapsed_ms(start),
            )
            return

        if result.server_status == "failed":
            attempt = DeliveryAttempt(
                attempt_id=attempt_id,
                transmission_id=tx_id,
                created_at=now,
                status_code=result.status_code,
                outcome=DeliveryOutcome.FAILED,
                source=DeliveryAttemptSource.POLL,
                error_message=SERVER_FAILED_ERROR,
                server_transmission_id=server_tx_id,
                retryable_inferred=False,
                final_url=final_url,
            )
            try:
                await record_attempt_and_update_status(
                    stores.conn,
                    stores.outbox_store,
                    attempt,
                    TransmissionStatus.FAILED,
                    expected_status=TransmissionStatus.PENDING,
                    last_error=SERVER_FAILED_ERROR,
                )
            except TransmissionStatusConflictError:
                return
            log.warning("transmission_failed_on_server", tx_id=short_id(tx_id))
            return

        thread = await stores.thread_store.get_thread(thread_id) if thread_id else None
        assistant = None
        if thread is not None:
            assistant = Message(
                message_id=str(ULID()),
                thread_id=thread.thread_id,
                creator=CreatorType.ASSISTANT,
                text=result.assistant or NO_ASSISTANT_TEXT,
                created_at=now,
                server_transmission_id=server_tx_id,
                evidence_json=_evidence_json(result),
            )

        attempt = DeliveryAttempt(
            attempt_id=attempt_id,
            transmission_id=tx_id,
            created_at=now,
            status_code=result.status_code,
            outcome=DeliveryOutcome.SUCCEEDED,
            source=DeliveryAttemptSource.POLL,
            server_transmission_id=server_tx_id,
            final_url=final_url,
        )
        try:
            await record_attempt_and_update_status(
                stores.conn,
                stores.outbox_store,
                attempt,
                TransmissionStatus.SUCCEEDED,
                expected_status=TransmissionStatus.PENDING,
                assistant_message=assistant,
                thread_store=stores.thread_store,
                memento=_memento_fields(result),
            )
        except TransmissionStatusConflictError:
            log.warning("poll_success_skipped_state_conflict", tx_id=short_id(tx_id))
            return

        log.info(
            "transmission_succeeded",
            tx_id=short_id(tx_id),
            server_tx_id=short_id(server_tx_id),
            via="poll",
            assistant_appended=assistant is not None,
            elapsed_ms=_elapsed_ms(start),
        )

    async def _record_poll_failure(
        self,
        tx_id: str,
        server_tx_id: str,
        attempt_id: str,
        error: Exception,
    ) -> None:
        """poll 出错：可重试时保持 pending，否则转为 failed"""
        stores = self._stores
        fresh = await stores.outbox_store.get_transmission(tx_id)
        if fresh is None or fresh.status != TransmissionStatus.PENDING:
            return

        decision = RetryPolicy.classify_exception(error)
        reason = _describe_error(error)
        attempt = DeliveryAttempt(
            attempt_id=attempt_id,
            transmission_id=tx_id,
            created_at=_now(),
            status_code=_status_code_of(error),
            outcome=DeliveryOutcome.FAILED,
            source=DeliveryAttemptSource.POLL,
            error_message=reason,
            server_transmission_id=server_tx_id,
            retryable_inferred=decision.retryable,
            retry_after_seconds=decision.retry_after_seconds,
            final_url=error.final_url if isinstance(error, HTTPStatusError) else None,
        )
        try:
            await record_attempt_and_update_status(
                stores.conn,
                stores.outbox_store,
                attempt,
                None if decision.retryable else TransmissionStatus.FAILED,
                expected_status=None if decision.retryable else TransmissionStatus.PENDING,
                last_error=reason,
            )
        except TransmissionStatusConflictError:
            return

        log.warning(
            "transmission_poll_failed",
            tx_id=short_id(tx_id),
            error_type=type(error).__name__,
            retryable=decision.retryable,
        )

    # ---- retry ----

    async def retry_failed(self) -> int:
        """把所有 failed 的 Transmission 重置为 queued（不抛出异常，无网络）

        chat_fail 类型的 Packet 一次性翻转为 chat，保证手动重试后能成功。

        Returns:
            重新入队的数量
        """
        stores = self._stores
        try:
            failed = await stores.outbox_store.list_transmissions(
                status=TransmissionStatus.FAILED
            )
            if not failed:
                return 0

            flip_packet_ids: set[str] = set()
            for tx in failed:
                packet = await stores.outbox_store.get_packet(tx.packet_id)
                if packet is not None and packet.packet_type == PacketType.CHAT_FAIL:
                    flip_packet_ids.add(packet.packet_id)
                    log.info(
                        "debug_fail_flag_cleared",
                        tx_id=short_id(tx.transmission_id),
                        packet_id=short_id(packet.packet_id),
                    )

            count = await requeue_failed(
                stores.conn,
                stores.outbox_store,
                failed,
                flip_packet_ids,
            )
        except Exception as e:
            log.error(
                "retry_failed_error",
                error_type=type(e).__name__,
                error=str(e),
            )
            return 0

        log.info("failed_transmissions_requeued", count=count)
        return count

    # ---- memento ----

    async def decide_thread_memento(
        self,
        thread_id: str,
        memento_id: str,
        decision: MementoDecision,
    ) -> MementoDecisionResult:
        """提交 ThreadMemento 决策并清空本地草稿字段

        Raises:
            UnsupportedTransportError: transport 不支持 memento decision
            TransportError: 请求失败
        """
        if not isinstance(self._transport, ChatTransportMementoDecision):
            raise UnsupportedTransportError("memento_decision")

        result = await self._transport.decide_memento(thread_id, memento_id, decision)
        cleared = await clear_memento_drafts(
            self._stores.conn,
            self._stores.outbox_store,
            thread_id,
            memento_id,
        )
        log.info(
            "thread_memento_decided",
            thread_id=short_id(thread_id),
            memento_id=short_id(memento_id),
            decision=MementoDecision(decision).value,
            applied=result.applied,
            cleared=cleared,
        )
        return result
