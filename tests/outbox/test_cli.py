"""CLI 命令测试（不访问网络的命令）"""

import pytest

from solmobile.core.models import TransmissionStatus
from solmobile.core.store import create_store_group
from solmobile.outbox.__main__ import print_transmission, run_command
from solmobile.outbox.actions import TransmissionActions
from solmobile.transport.scripted import ScriptedTransport


@pytest.fixture
def db_env(tmp_db_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SOL_DB_PATH", str(tmp_db_path))
    return tmp_db_path


class TestCli:
    async def test_status_empty(self, db_env, capsys):
        assert await run_command("status", []) == 0

        out = capsys.readouterr().out
        for status in TransmissionStatus:
            assert f"{status.value}: 0" in out

    async def test_status_lists_failures(self, db_env, post_message, capsys):
        group = await create_store_group(str(db_env))
        actions = TransmissionActions(group, ScriptedTransport())
        thread, message = await post_message(group, "/fail now")
        await actions.enqueue_chat(thread, message)
        await actions.process_queue()
        await group.close()

        assert await run_command("status", []) == 0

        out = capsys.readouterr().out
        assert "failed: 1" in out
        assert "Simulated failure" in out

    async def test_print_transmission_exit_codes(self, memory_store_group, post_message, capsys):
        actions = TransmissionActions(memory_store_group, ScriptedTransport())
        thread, message = await post_message(memory_store_group, "/fail now")
        tx = await actions.enqueue_chat(thread, message)
        await actions.process_queue()

        assert await print_transmission(memory_store_group, tx.transmission_id) == 2
        assert await print_transmission(memory_store_group, "missing") == 1

        await actions.retry_failed()
        await actions.process_queue()
        assert await print_transmission(memory_store_group, tx.transmission_id) == 0

    async def test_budget_status_and_clear(self, db_env, capsys):
        group = await create_store_group(str(db_env))
        await TransmissionActions(group, ScriptedTransport()).budget.apply_budget_exceeded(None)
        await group.close()

        assert await run_command("status", []) == 0
        assert "budget: blocked until -" in capsys.readouterr().out

        assert await run_command("budget-clear", []) == 0
        assert await run_command("status", []) == 0
        assert "budget: blocked" not in capsys.readouterr().out
