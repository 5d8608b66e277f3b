"""CLI 入口模块 -- python -m codeanalyzer.core <command>

支持的命令：
  recover-tasks  把中断的 PENDING/RUNNING 任务标记为 FAILED
  list-pending   列出持久化中未结束的任务
"""

import asyncio
import sys

from .config import get_db_path


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print("用法: python -m codeanalyzer.core <command>")
        print("命令:")
        print("  recover-tasks  把中断的任务标记为 FAILED")
        print("  list-pending   列出未结束的任务")
        sys.exit(1)

    command = sys.argv[1]

    if command == "recover-tasks":
        asyncio.run(recover_tasks())
    elif command == "list-pending":
        asyncio.run(list_pending())
    else:
        print(f"未知命令: {command}")
        print("可用命令: recover-tasks, list-pending")
        sys.exit(1)


async def recover_tasks() -> None:
    """执行中断任务恢复"""
    from .recovery import recover_interrupted_tasks
    from .store import create_store_group

    db_path = get_db_path()
    print(f"数据库路径: {db_path}")

    store_group = await create_store_group(db_path)
    try:
        recovered = await recover_interrupted_tasks(
            store_group.conn,
            store_group.task_store,
            store_group.log_store,
        )
        print(f"恢复完成，标记 {len(recovered)} 个任务为 FAILED")
    finally:
        await store_group.conn.close()


async def list_pending() -> None:
    """列出 PENDING/RUNNING 任务"""
    from .models.enums import ACTIVE_STATES
    from .store import create_store_group

    store_group = await create_store_group(get_db_path())
    try:
        tasks = await store_group.task_store.list_by_status(ACTIVE_STATES)
        for task in tasks:
            print(f"{task.task_id}  {task.status:<8}  {task.type:<18}  {task.concurrency_key}")
        print(f"共 {len(tasks)} 个任务")
    finally:
        await store_group.conn.close()


if __name__ == "__main__":
    main()
