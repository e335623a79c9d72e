"""CLI 入口模块 -- python -m solmobile.outbox <command>

支持的命令：
  send <thread_id> <text>  追加用户消息并发送
  drain                    处理队列直到清空
  retry-failed             重新入队所有 failed 并处理
  status                   按状态统计 transmission，列出失败原因
  diagnostics              处理一轮队列并导出脱敏诊断信息
  budget-clear             手动解除预算封禁
"""

import asyncio
import sys

from solmobile.core.config import get_db_path, short_id
from solmobile.core.models import TransmissionStatus
from solmobile.core.store import StoreGroup, create_store_group
from solmobile.transport import SolServerClient, load_transport_config

from .actions import TransmissionActions
from .config import load_outbox_config
from .logging_config import setup_logging
from .service import OutboxService

USAGE = """用法: python -m solmobile.outbox <command>
命令:
  send <thread_id> <text>  追加用户消息并发送
  drain                    处理队列直到清空
  retry-failed             重新入队所有 failed 并处理
  status                   按状态统计 transmission
  diagnostics              处理一轮队列并导出诊断信息
  budget-clear             手动解除预算封禁"""

COMMANDS = ("send", "drain", "retry-failed", "status", "diagnostics", "budget-clear")


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print(USAGE)
        sys.exit(1)

    command = sys.argv[1]
    if command not in COMMANDS:
        print(f"未知命令: {command}")
        print(f"可用命令: {', '.join(COMMANDS)}")
        sys.exit(1)

    if command == "send" and len(sys.argv) < 4:
        print("用法: python -m solmobile.outbox send <thread_id> <text>")
        sys.exit(1)

    setup_logging()
    sys.exit(asyncio.run(run_command(command, sys.argv[2:])))


async def run_command(command: str, args: list[str]) -> int:
    """执行命令，返回进程退出码"""
    db_path = get_db_path()
    store_group = await create_store_group(db_path)
    client = SolServerClient.from_config(load_transport_config())
    config = load_outbox_config()
    actions = TransmissionActions(store_group, client, config)
    service = OutboxService(store_group, actions, config)

    try:
        if command == "send":
            thread_id, text = args[0], " ".join(args[1:])
            tx = await service.send_user_message(thread_id, text)
            await service.wait_idle()
            if tx is None:
                print("入队失败，请查看日志")
                return 1
            return await print_transmission(store_group, tx.transmission_id)

        if command == "drain":
            rounds = await service.drain()
            print(f"处理完成，共 {rounds} 轮")
            return await print_status(store_group)

        if command == "retry-failed":
            count = await service.retry_failed()
            await service.wait_idle()
            print(f"重新入队 {count} 条")
            return await print_status(store_group)

        if command == "status":
            return await print_status(store_group)

        if command == "budget-clear":
            await actions.budget.clear()
            print("预算封禁已解除")
            return 0

        # diagnostics
        await actions.process_queue()
        print(client.diagnostics.export_text())
        last_failure = client.diagnostics.last_failure_entry()
        if last_failure is not None:
            print()
            print(client.diagnostics.curl_command(last_failure))
        return 0
    finally:
        await client.aclose()
        await store_group.close()


async def print_transmission(store_group: StoreGroup, transmission_id: str) -> int:
    tx = await store_group.outbox_store.get_transmission(transmission_id)
    if tx is None:
        print(f"transmission {short_id(transmission_id)} 不存在")
        return 1
    print(f"transmission {short_id(tx.transmission_id)}: {tx.status.value}")
    if tx.last_error:
        print(f"  last_error: {tx.last_error}")
    return 0 if tx.status != TransmissionStatus.FAILED else 2


async def print_status(store_group: StoreGroup) -> int:
    counts = await store_group.outbox_store.count_by_status()
    for status in TransmissionStatus:
        print(f"{status.value:>10}: {counts[status]}")

    failed = await store_group.outbox_store.list_transmissions(status=TransmissionStatus.FAILED)
    for tx in failed:
        print(f"  failed {short_id(tx.transmission_id)}: {tx.last_error or '-'}")

    budget = await store_group.budget_store.get_state()
    if budget.is_blocked:
        until = budget.blocked_until.isoformat() if budget.blocked_until else "-"
        print(f"budget: blocked until {until}")
    return 0


if __name__ == "__main__":
    main()
