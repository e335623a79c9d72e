"""solmobile Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .enums import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    CreatorType,
    DeliveryAttemptSource,
    DeliveryOutcome,
    PacketType,
    TransmissionStatus,
    validate_transition,
)
from .budget import BudgetState
from .envelope import PacketEnvelope
from .thread import Message, Thread
from .transmission import DeliveryAttempt, Packet, Transmission

__all__ = [
    # 枚举
    "TransmissionStatus",
    "CreatorType",
    "PacketType",
    "DeliveryOutcome",
    "DeliveryAttemptSource",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "validate_transition",
    # Thread
    "Thread",
    "Message",
    # Outbox
    "Packet",
    "Transmission",
    "DeliveryAttempt",
    "PacketEnvelope",
    # Budget
    "BudgetState",
]
