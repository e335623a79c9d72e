"""outbox 测试 fixture -- ScriptedTransport 驱动的 TransmissionActions"""

import pytest
import pytest_asyncio

from solmobile.outbox.actions import TransmissionActions
from solmobile.outbox.config import OutboxConfig
from solmobile.transport.scripted import ScriptedTransport


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def outbox_config() -> OutboxConfig:
    """测试用配置：pending 轮询不设最小间隔"""
    return OutboxConfig(pending_fast_interval_s=0)


@pytest_asyncio.fixture
async def actions(memory_store_group, transport, outbox_config) -> TransmissionActions:
    return TransmissionActions(memory_store_group, transport, outbox_config)
