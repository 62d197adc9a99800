from pathlib import Path

import allure
from sqlalchemy import inspect, text

from photo_tasks.engine.repository import TaskRepository

pytestmark = [
    allure.epic("Retry Engine"),
    allure.feature("Task Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
    assert version == "20261019_0002"

    tables = set(inspect(repository.engine).get_table_names())
    assert {
        "users",
        "service_prices",
        "generation_tasks",
        "task_events",
        "ledger_entries",
    } <= tables

    task_columns = {column["name"] for column in inspect(repository.engine).get_columns(
        "generation_tasks",
    )}
    assert {
        "retry_count",
        "max_retries",
        "last_error_retryable",
        "superseded_by",
        "parent_task_id",
        "billing_suppressed",
        "billed",
        "billing_failed",
    } <= task_columns
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "twice.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        rows = connection.execute(text("SELECT COUNT(*) FROM alembic_version")).scalar()
    assert rows == 1
    repository.close()
