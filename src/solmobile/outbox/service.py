"""OutboxService -- outbox 引擎的驱动

定时 tick + 显式 kick 两种触发方式。运行中的 kick 不会并发执行，
只会在本轮结束后再补跑一轮。
"""

import asyncio
from datetime import UTC, datetime

import structlog
from ulid import ULID

from solmobile.core.config import short_id
from solmobile.core.models import CreatorType, Message, Thread, Transmission, TransmissionStatus
from solmobile.core.store import StoreGroup
from solmobile.core.store.transaction import append_message

from .actions import TransmissionActions
from .config import OutboxConfig

log = structlog.get_logger()

# 单次 drain 最多处理的轮数
MAX_DRAIN_ROUNDS = 50

THREAD_TITLE_LENGTH = 100


class OutboxService:
    """Outbox 驱动服务

    生命周期: start() 启动定时 tick，stop() 取消 tick 并等待进行中的一轮结束。
    """

    def __init__(
        self,
        store_group: StoreGroup,
        actions: TransmissionActions,
        config: OutboxConfig | None = None,
    ) -> None:
        self._stores = store_group
        self._actions = actions
        self._config = config or OutboxConfig()

        self._tick_task: asyncio.Task | None = None
        self._run_task: asyncio.Task | None = None
        self._rerun_requested = False

    @property
    def actions(self) -> TransmissionActions:
        return self._actions

    @property
    def running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    async def start(self) -> None:
        """启动定时 tick，并立即触发一轮"""
        if self.running:
            return
        self._tick_task = asyncio.create_task(self._tick_loop())
        log.info("outbox_service_started", tick_s=self._config.tick_s)
        self.kick("start")

    async def stop(self) -> None:
        """停止定时 tick，等待进行中的一轮结束"""
        if self._tick_task is not None:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None

        self._rerun_requested = False
        await self.wait_idle()
        log.info("outbox_service_stopped")

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.tick_s)
            self.kick("tick")

    def kick(self, reason: str) -> None:
        """请求处理一轮；运行中时合并为一次补跑"""
        if self._run_task is not None and not self._run_task.done():
            self._rerun_requested = True
            log.debug("outbox_kick_coalesced", reason=reason)
            return
        log.debug("outbox_kick", reason=reason)
        self._run_task = asyncio.create_task(self._run(reason))

    async def wait_idle(self) -> None:
        """等待当前一轮（含补跑）结束"""
        while self._run_task is not None and not self._run_task.done():
            await asyncio.shield(self._run_task)

    async def _run(self, reason: str) -> None:
        while True:
            self._rerun_requested = False
            with structlog.contextvars.bound_contextvars(outbox_run=reason):
                try:
                    await self.drain()
                except Exception as e:
                    log.error("outbox_run_failed", error_type=type(e).__name__, error=str(e))
            if not self._rerun_requested:
                return
            reason = "rerun"

    async def drain(self, max_rounds: int = MAX_DRAIN_ROUNDS) -> int:
        """反复调用 process_queue 直到队列清空或不再前进

        Returns:
            执行的轮数
        """
        outbox = self._stores.outbox_store
        rounds = 0
        remaining = len(await outbox.list_transmissions(status=TransmissionStatus.QUEUED))

        while rounds < max_rounds:
            await self._actions.process_queue()
            rounds += 1

            queued = len(await outbox.list_transmissions(status=TransmissionStatus.QUEUED))
            if queued == 0 or queued >= remaining:
                break
            remaining = queued

        return rounds

    async def send_user_message(
        self,
        thread_id: str,
        text: str,
        simulate_failure: bool | None = None,
    ) -> Transmission | None:
        """追加用户消息并入队发送；Thread 不存在时创建

        Returns:
            新建的 Transmission；入队失败时返回 None
        """
        stores = self._stores
        now = datetime.now(UTC)

        thread = await stores.thread_store.get_thread(thread_id)
        if thread is None:
            thread = Thread(
                thread_id=thread_id,
                title=text.strip()[:THREAD_TITLE_LENGTH],
                created_at=now,
                last_active_at=now,
            )
            await stores.thread_store.create_thread(thread)
            await stores.conn.commit()
            log.info("thread_created", thread_id=short_id(thread_id))

        message = Message(
            message_id=str(ULID()),
            thread_id=thread_id,
            creator=CreatorType.USER,
            text=text,
            created_at=now,
        )
        await append_message(stores.conn, stores.thread_store, message)

        thread = await stores.thread_store.get_thread(thread_id)
        transmission = await self._actions.enqueue_chat(thread, message, simulate_failure)
        if transmission is not None:
            self.kick("send")
        return transmission

    async def retry_failed(self) -> int:
        """重新入队所有 failed 的 Transmission 并触发一轮"""
        count = await self._actions.retry_failed()
        if count:
            self.kick("retry")
        return count
