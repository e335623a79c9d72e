"""ScriptedTransport -- 可编排响应的 transport 测试替身

按调用顺序消费脚本项：ChatResponse / 异常 / 可调用对象。
脚本耗尽后回退为 Echo 模式，返回 "Echo: {message_text}"。
同时实现 polling 与 memento decision 能力。
"""

import asyncio
import inspect
from collections import deque
from collections.abc import Callable
from typing import Any

from solmobile.core.models.enums import PacketType
from solmobile.core.models.envelope import PacketEnvelope
from .exceptions import SimulatedFailureError
from .protocols import (
    ChatPollResponse,
    ChatResponse,
    DiagnosticsContext,
    MementoDecision,
    MementoDecisionResult,
)

# 脚本项：响应、异常，或接收请求参数并返回其一的可调用对象
ScriptItem = ChatResponse | ChatPollResponse | MementoDecisionResult | Exception | Callable[..., Any]


class ScriptedTransport:
    """可编排响应的 ChatTransport 替身

    Args:
        fail_on_chat_fail: 为 True 时 chat_fail 类型的 packet 抛出 SimulatedFailureError
        delay_s: 每次调用前的模拟延迟
    """

    def __init__(self, fail_on_chat_fail: bool = True, delay_s: float = 0.0) -> None:
        self.fail_on_chat_fail = fail_on_chat_fail
        self.delay_s = delay_s

        self._send_script: deque[ScriptItem] = deque()
        self._poll_script: deque[ScriptItem] = deque()
        self._decision_script: deque[ScriptItem] = deque()

        # 调用记录
        self.sent: list[PacketEnvelope] = []
        self.send_contexts: list[DiagnosticsContext | None] = []
        self.polled: list[str] = []
        self.decisions: list[tuple[str, str, MementoDecision]] = []

    # ---- 脚本编排 ----

    def script_send(self, *items: ScriptItem) -> "ScriptedTransport":
        self._send_script.extend(items)
        return self

    def script_poll(self, *items: ScriptItem) -> "ScriptedTransport":
        self._poll_script.extend(items)
        return self

    def script_decision(self, *items: ScriptItem) -> "ScriptedTransport":
        self._decision_script.extend(items)
        return self

    @property
    def send_count(self) -> int:
        return len(self.sent)

    # ---- ChatTransport ----

    async def send(
        self,
        envelope: PacketEnvelope,
        diagnostics: DiagnosticsContext | None = None,
    ) -> ChatResponse:
        self.sent.append(envelope)
        self.send_contexts.append(diagnostics)
        await self._delay()

        if self.fail_on_chat_fail and envelope.packet_type == PacketType.CHAT_FAIL:
            raise SimulatedFailureError()

        if self._send_script:
            return await self._resolve(self._send_script.popleft(), envelope, diagnostics)

        return ChatResponse(text=f"Echo: {envelope.message_text}", status_code=200)

    # ---- ChatTransportPolling ----

    async def poll(
        self,
        transmission_id: str,
        diagnostics: DiagnosticsContext | None = None,
    ) -> ChatPollResponse:
        self.polled.append(transmission_id)
        await self._delay()

        if self._poll_script:
            return await self._resolve(self._poll_script.popleft(), transmission_id, diagnostics)

        return ChatPollResponse(pending=True, server_status="created", status_code=200)

    # ---- ChatTransportMementoDecision ----

    async def decide_memento(
        self,
        thread_id: str,
        memento_id: str,
        decision: MementoDecision,
    ) -> MementoDecisionResult:
        self.decisions.append((thread_id, memento_id, decision))
        await self._delay()

        if self._decision_script:
            return await self._resolve(
                self._decision_script.popleft(), thread_id, memento_id, decision
            )

        return MementoDecisionResult(status_code=200, applied=True)

    # ---- 内部 ----

    async def _delay(self) -> None:
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)

    @staticmethod
    async def _resolve(item: ScriptItem, *args: Any) -> Any:
        if isinstance(item, Exception):
            raise item
        if callable(item):
            result = item(*args)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, Exception):
                raise result
            return result
        return item
