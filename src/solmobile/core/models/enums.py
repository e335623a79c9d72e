"""枚举定义 -- Transmission 状态机、消息创建者、Packet 类型、投递尝试

包含 TransmissionStatus 状态机、CreatorType、PacketType、DeliveryOutcome、
DeliveryAttemptSource 枚举，以及 VALID_TRANSITIONS 合法流转映射和
TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class TransmissionStatus(StrEnum):
    """Transmission 状态机"""

    QUEUED = "queued"
    SENDING = "sending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    # 服务端异步处理（202）时的等待态，需要 polling 能力的 transport
    PENDING = "pending"


# 合法状态流转；唯一的环是 FAILED -> QUEUED（显式重试）
VALID_TRANSITIONS: dict[TransmissionStatus, set[TransmissionStatus]] = {
    TransmissionStatus.QUEUED: {
        TransmissionStatus.SENDING,
        TransmissionStatus.FAILED,  # 客户端尝试次数上限
    },
    TransmissionStatus.SENDING: {
        TransmissionStatus.SUCCEEDED,
        TransmissionStatus.FAILED,
        TransmissionStatus.PENDING,
    },
    TransmissionStatus.PENDING: {
        TransmissionStatus.SUCCEEDED,
        TransmissionStatus.FAILED,
    },
    TransmissionStatus.FAILED: {TransmissionStatus.QUEUED},
    # 成功为终态
    TransmissionStatus.SUCCEEDED: set(),
}

TERMINAL_STATES: set[TransmissionStatus] = {
    TransmissionStatus.SUCCEEDED,
}


class CreatorType(StrEnum):
    """消息创建者"""

    USER = "user"
    ASSISTANT = "assistant"


class PacketType(StrEnum):
    """Packet 类型

    CHAT_FAIL 是调试用的一次性失败标记：transport 会要求服务端模拟 500，
    retry_failed 时翻转为 CHAT。
    """

    CHAT = "chat"
    CHAT_FAIL = "chat_fail"


class DeliveryOutcome(StrEnum):
    """单次投递尝试的结果"""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class DeliveryAttemptSource(StrEnum):
    """投递尝试来源"""

    SEND = "send"
    POLL = "poll"
    # 客户端判定的终止（例如超过最大尝试次数），没有网络请求
    TERMINAL = "terminal"


def validate_transition(
    from_status: TransmissionStatus, to_status: TransmissionStatus
) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
