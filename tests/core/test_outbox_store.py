"""OutboxStore 单元测试

测试内容：
1. Packet / Transmission 创建与查询
2. 按状态 / thread 筛选，创建时间正序（同一时刻按插入顺序）
3. compare-and-set 状态更新
4. 投递台账 append-only 与级联删除
5. 文件数据库持久化（重启后可读）
"""

from datetime import UTC, datetime, timedelta

from solmobile.core.models import (
    DeliveryAttempt,
    DeliveryAttemptSource,
    DeliveryOutcome,
    Packet,
    PacketType,
    Transmission,
    TransmissionStatus,
)
from solmobile.core.store import create_store_group
from solmobile.core.store.sqlite_init import verify_wal_mode
from solmobile.core.store.transaction import create_packet_and_transmission

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _pair(n: int, thread_id: str = "t1", created_at: datetime = T0) -> tuple[Packet, Transmission]:
    packet = Packet(
        packet_id=f"p{n}",
        thread_id=thread_id,
        message_ids=[f"m{n}"],
    )
    tx = Transmission(
        transmission_id=f"tx{n}",
        request_id=packet.packet_id,
        packet_id=packet.packet_id,
        created_at=created_at,
        updated_at=created_at,
    )
    return packet, tx


async def _create(stores, n: int, **kwargs) -> Transmission:
    packet, tx = _pair(n, **kwargs)
    await create_packet_and_transmission(stores.conn, stores.outbox_store, packet, tx)
    return tx


def _attempt(attempt_id: str, tx_id: str, offset_s: int = 0, **kwargs) -> DeliveryAttempt:
    defaults = dict(
        attempt_id=attempt_id,
        transmission_id=tx_id,
        created_at=T0 + timedelta(seconds=offset_s),
        status_code=200,
        outcome=DeliveryOutcome.SUCCEEDED,
    )
    defaults.update(kwargs)
    return DeliveryAttempt(**defaults)


class TestPacketAndTransmission:
    async def test_create_and_get(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1)

        packet = await stores.outbox_store.get_packet("p1")
        assert packet.packet_type == PacketType.CHAT
        assert packet.message_ids == ["m1"]
        assert packet.simulate_failure is False

        tx = await stores.outbox_store.get_transmission("tx1")
        assert tx.status == TransmissionStatus.QUEUED
        assert tx.request_id == "p1"
        assert tx.delivery_attempts == []

    async def test_get_missing(self, memory_store_group):
        assert await memory_store_group.outbox_store.get_transmission("nope") is None
        assert await memory_store_group.outbox_store.get_packet("nope") is None

    async def test_update_packet_type(self, memory_store_group):
        stores = memory_store_group
        packet, tx = _pair(1)
        packet.packet_type = PacketType.CHAT_FAIL
        await create_packet_and_transmission(stores.conn, stores.outbox_store, packet, tx)
        assert (await stores.outbox_store.get_packet("p1")).simulate_failure is True

        await stores.outbox_store.update_packet_type("p1", PacketType.CHAT)
        await stores.conn.commit()
        assert (await stores.outbox_store.get_packet("p1")).packet_type == PacketType.CHAT


class TestListTransmissions:
    async def test_ordered_by_created_at(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1, created_at=T0 + timedelta(seconds=2))
        await _create(stores, 2, created_at=T0)
        await _create(stores, 3, created_at=T0 + timedelta(seconds=1))

        txs = await stores.outbox_store.list_transmissions()
        assert [t.transmission_id for t in txs] == ["tx2", "tx3", "tx1"]

    async def test_same_timestamp_keeps_insertion_order(self, memory_store_group):
        stores = memory_store_group
        for n in (5, 3, 4):
            await _create(stores, n)

        txs = await stores.outbox_store.list_transmissions(status=TransmissionStatus.QUEUED)
        assert [t.transmission_id for t in txs] == ["tx5", "tx3", "tx4"]

    async def test_filter_by_status_and_thread(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1, thread_id="a")
        await _create(stores, 2, thread_id="b")
        await stores.outbox_store.update_transmission_status(
            "tx2", TransmissionStatus.SENDING, T0, None
        )
        await stores.conn.commit()

        queued = await stores.outbox_store.list_transmissions(status=TransmissionStatus.QUEUED)
        assert [t.transmission_id for t in queued] == ["tx1"]

        in_b = await stores.outbox_store.list_transmissions(thread_id="b")
        assert [t.transmission_id for t in in_b] == ["tx2"]

        none = await stores.outbox_store.list_transmissions(
            status=TransmissionStatus.QUEUED, thread_id="b"
        )
        assert none == []

    async def test_attempts_attached(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1)
        await _create(stores, 2)
        await stores.outbox_store.append_attempt(_attempt("a2", "tx1", offset_s=5))
        await stores.outbox_store.append_attempt(_attempt("a1", "tx1", offset_s=1))
        await stores.conn.commit()

        txs = await stores.outbox_store.list_transmissions()
        assert [a.attempt_id for a in txs[0].delivery_attempts] == ["a1", "a2"]
        assert txs[1].delivery_attempts == []


class TestStatusUpdate:
    async def test_compare_and_set(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1)

        rows = await stores.outbox_store.update_transmission_status(
            "tx1",
            TransmissionStatus.SENDING,
            T0,
            None,
            expected_status=TransmissionStatus.QUEUED,
        )
        assert rows == 1

        rows = await stores.outbox_store.update_transmission_status(
            "tx1",
            TransmissionStatus.SENDING,
            T0,
            None,
            expected_status=TransmissionStatus.QUEUED,
        )
        assert rows == 0

    async def test_last_error_written(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1)
        later = T0 + timedelta(minutes=1)
        await stores.outbox_store.update_transmission_status(
            "tx1", TransmissionStatus.FAILED, later, "boom"
        )
        await stores.conn.commit()

        tx = await stores.outbox_store.get_transmission("tx1")
        assert tx.status == TransmissionStatus.FAILED
        assert tx.last_error == "boom"
        assert tx.updated_at == later

    async def test_count_by_status(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1)
        await _create(stores, 2)
        await stores.outbox_store.update_transmission_status(
            "tx2", TransmissionStatus.SENDING, T0, None
        )
        await stores.conn.commit()

        counts = await stores.outbox_store.count_by_status()
        assert counts[TransmissionStatus.QUEUED] == 1
        assert counts[TransmissionStatus.SENDING] == 1
        assert counts[TransmissionStatus.FAILED] == 0


class TestAttemptsAndDelete:
    async def test_attempt_fields_roundtrip(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1)
        attempt = _attempt(
            "a1",
            "tx1",
            status_code=429,
            outcome=DeliveryOutcome.FAILED,
            source=DeliveryAttemptSource.SEND,
            error_message="HTTP 429",
            retryable_inferred=True,
            retry_after_seconds=5,
            final_url="http://server/v1/chat",
        )
        await stores.outbox_store.append_attempt(attempt)
        await stores.conn.commit()

        attempts = await stores.outbox_store.list_attempts("tx1")
        assert attempts == [attempt]

    async def test_retryable_none_preserved(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1)
        await stores.outbox_store.append_attempt(_attempt("a1", "tx1"))
        await stores.conn.commit()

        (attempt,) = await stores.outbox_store.list_attempts("tx1")
        assert attempt.retryable_inferred is None

    async def test_delete_transmission_cascades(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1)
        await stores.outbox_store.append_attempt(_attempt("a1", "tx1"))
        await stores.conn.commit()

        await stores.outbox_store.delete_transmission("tx1")
        await stores.conn.commit()

        assert await stores.outbox_store.get_transmission("tx1") is None
        assert await stores.outbox_store.get_packet("p1") is None
        assert await stores.outbox_store.list_attempts("tx1") == []

    async def test_memento_draft_cleared_by_thread(self, memory_store_group):
        stores = memory_store_group
        await _create(stores, 1, thread_id="a")
        await _create(stores, 2, thread_id="b")
        await stores.outbox_store.update_memento_draft("tx1", "mem-1", "2026-01-01", "Arc: x")
        await stores.outbox_store.update_memento_draft("tx2", "mem-1", "2026-01-01", "Arc: y")
        await stores.conn.commit()

        cleared = await stores.outbox_store.clear_memento_drafts("a", "mem-1")
        await stores.conn.commit()

        assert cleared == 1
        assert (await stores.outbox_store.get_transmission("tx1")).server_memento_id is None
        assert (await stores.outbox_store.get_transmission("tx2")).server_memento_id == "mem-1"


class TestDurability:
    async def test_survives_reopen(self, tmp_db_path):
        """关闭连接后重新打开，数据仍在"""
        group = await create_store_group(str(tmp_db_path))
        await _create(group, 1)
        await group.close()

        reopened = await create_store_group(str(tmp_db_path))
        try:
            tx = await reopened.outbox_store.get_transmission("tx1")
            assert tx is not None
            assert tx.status == TransmissionStatus.QUEUED
        finally:
            await reopened.close()

    async def test_file_db_uses_wal(self, store_group):
        assert await verify_wal_mode(store_group.conn) is True

    async def test_memory_db_not_wal(self, memory_store_group):
        assert await verify_wal_mode(memory_store_group.conn) is False
