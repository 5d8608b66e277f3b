"""重启持久性集成测试

第一次启动完成一个任务，第二次启动后任务与日志仍可查询。
"""

from pathlib import Path

from httpx import ASGITransport, AsyncClient


async def _run_app(handler):
    from codeanalyzer.gateway.main import create_app

    app = create_app()
    async with app.router.lifespan_context(app):
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as client:
            return await handler(app, client)


class TestRestartDurability:
    async def test_finished_task_survives_restart(self, integration_env: Path):
        async def first_run(app, client: AsyncClient) -> tuple[str, str]:
            resp = await client.post(
                "/api/tasks",
                json={
                    "type": "requirements",
                    "domain_id": "auth",
                    "input_payload": {"files": ["src/auth/login.py"]},
                },
            )
            task_id = resp.json()["task_id"]
            await app.state.scheduler.wait_for_task(task_id)
            content = (await client.get(f"/api/tasks/{task_id}/logs")).json()["content"]
            return task_id, content

        task_id, content = await _run_app(first_run)

        async def second_run(app, client: AsyncClient) -> None:
            task = (await client.get(f"/api/tasks/{task_id}")).json()["task"]
            assert task["status"] == "COMPLETED"
            assert task["result"]["agent"] == "echo"

            logs = (await client.get(f"/api/tasks/{task_id}/logs")).json()
            assert logs["content"] == content
            assert logs["chunk_count"] > 0

        await _run_app(second_run)
