from __future__ import annotations

from pathlib import Path

import allure
import pytest

from photo_tasks.engine.models import TaskKind
from photo_tasks.engine.pricing import PriceCatalog
from photo_tasks.engine.repository import TaskRepository

pytestmark = [
    allure.epic("Billing"),
    allure.feature("Service Prices"),
]


@pytest.fixture()
def repository(tmp_path: Path):  # noqa: ANN201
    repo = TaskRepository(tmp_path / "prices.db")
    repo.init_schema()
    yield repo
    repo.close()


def test_seed_defaults_only_fills_missing_kinds(repository: TaskRepository) -> None:
    repository.set_price(kind=TaskKind.RESTORE, price=99)
    catalog = PriceCatalog(repository=repository, defaults={"restore": 30, "generate": 25})

    assert catalog.seed_defaults() == 1
    assert catalog.seed_defaults() == 0
    assert repository.list_prices() == {"generate": 25, "restore": 99}


def test_cost_of_prefers_stored_price_over_default(repository: TaskRepository) -> None:
    catalog = PriceCatalog(repository=repository, defaults={"stylize": 40})

    assert catalog.cost_of(TaskKind.STYLIZE) == 40
    repository.set_price(kind=TaskKind.STYLIZE, price=45)
    assert catalog.cost_of(TaskKind.STYLIZE) == 45


def test_cost_of_unpriced_kind_raises(repository: TaskRepository) -> None:
    catalog = PriceCatalog(repository=repository, defaults={})

    with pytest.raises(ValueError, match="No price configured for task kind 'poet_style'"):
        catalog.cost_of(TaskKind.POET_STYLE)


def test_all_prices_merges_defaults_and_overrides(repository: TaskRepository) -> None:
    repository.set_price(kind=TaskKind.GENERATE, price=10)
    catalog = PriceCatalog(repository=repository, defaults={"restore": 30, "generate": 25})

    assert catalog.all_prices() == {"generate": 10, "restore": 30}


def test_negative_price_is_rejected(repository: TaskRepository) -> None:
    with pytest.raises(ValueError, match="must be >= 0"):
        repository.set_price(kind=TaskKind.RESTORE, price=-1)
