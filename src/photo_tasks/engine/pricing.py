"""Task price lookup, frozen onto each task at creation."""

from __future__ import annotations

from photo_tasks.engine.models import TaskKind
from photo_tasks.engine.repository import TaskRepository


class PriceCatalog:
    """Reads prices from `service_prices`, falling back to configured defaults."""

    def __init__(self, *, repository: TaskRepository, defaults: dict[str, int]) -> None:
        self.repository = repository
        self.defaults = dict(defaults)

    def cost_of(self, kind: TaskKind) -> int:
        stored = self.repository.get_price(kind)
        if stored is not None:
            return stored
        default = self.defaults.get(kind.value)
        if default is None:
            raise ValueError(f"No price configured for task kind {kind.value!r}")
        return default

    def seed_defaults(self) -> int:
        """Store defaults for kinds that have no price row yet. Returns rows added."""

        stored = self.repository.list_prices()
        added = 0
        for kind in TaskKind:
            if kind.value in stored or kind.value not in self.defaults:
                continue
            self.repository.set_price(kind=kind, price=self.defaults[kind.value])
            added += 1
        return added

    def all_prices(self) -> dict[str, int]:
        prices = {kind: price for kind, price in self.defaults.items()}
        prices.update(self.repository.list_prices())
        return dict(sorted(prices.items()))
