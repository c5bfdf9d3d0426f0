import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Literal, Optional, Set

from pydantic import TypeAdapter

from ..models.recipe import Recipe

log = logging.getLogger(__name__)

_RECIPE_LIST = TypeAdapter(List[Recipe])


@dataclass
class StoreEvent:
    kind: Literal["upsert", "delete"]
    recipe_id: str
    recipe: Optional[Recipe] = None


class Subscription:
    """Async iterator over store events, registered as soon as it is created."""

    def __init__(self, store: "RecipeStore"):
        self._store = store
        self._queue: asyncio.Queue[StoreEvent] = asyncio.Queue()
        store._subscribers.add(self._queue)

    def __aiter__(self):
        return self

    async def __anext__(self) -> StoreEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._store._subscribers.discard(self._queue)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class RecipeStore:
    """
    Recipes keyed by id.

    Every write replaces the whole Recipe value and is applied synchronously
    on the event loop, so concurrent pipeline runs never interleave inside a
    write.  Values handed in or out are copies.
    """

    def __init__(self, path: Optional[str | Path] = None):
        self.path = Path(path) if path else None
        self._recipes: Dict[str, Recipe] = {}
        self._subscribers: Set[asyncio.Queue] = set()
        self._save_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._recipes)

    def __contains__(self, recipe_id: str) -> bool:
        return recipe_id in self._recipes

    def upsert(self, recipe: Recipe) -> Recipe:
        stored = recipe.model_copy(deep=True)
        self._recipes[stored.id] = stored
        self._publish(StoreEvent("upsert", stored.id, stored.model_copy(deep=True)))
        return stored.model_copy(deep=True)

    def get(self, recipe_id: str) -> Optional[Recipe]:
        recipe = self._recipes.get(recipe_id)
        return recipe.model_copy(deep=True) if recipe else None

    def all(self) -> List[Recipe]:
        """All recipes, most recently added (or pinned) first."""
        recipes = sorted(self._recipes.values(), key=lambda r: r.sort_date, reverse=True)
        return [r.model_copy(deep=True) for r in recipes]

    def delete(self, recipe_id: str) -> bool:
        if self._recipes.pop(recipe_id, None) is None:
            return False
        self._publish(StoreEvent("delete", recipe_id))
        return True

    def pin(self, recipe_id: str) -> Optional[Recipe]:
        """Move a recipe to the front of the list."""
        recipe = self._recipes.get(recipe_id)
        if recipe is None:
            return None
        return self.upsert(recipe.model_copy(update={"pinned_at": datetime.now(timezone.utc)}))

    def subscribe(self) -> Subscription:
        return Subscription(self)

    def _publish(self, event: StoreEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        recipes = _RECIPE_LIST.validate_json(self.path.read_bytes())
        for recipe in recipes:
            # Nothing is generating right after a restart
            recipe.generating = False
            self._recipes[recipe.id] = recipe
        log.info(f"📂 Loaded {len(recipes)} recipes from {self.path}")

    def save(self) -> None:
        if self.path is None:
            return
        self._write(self._dump())

    async def save_async(self) -> None:
        """Save with the file write on a worker thread; the snapshot is taken on the loop."""
        if self.path is None:
            return
        async with self._save_lock:
            await asyncio.to_thread(self._write, self._dump())

    def _dump(self) -> bytes:
        return _RECIPE_LIST.dump_json(self.all(), by_alias=True, indent=2)

    def _write(self, data: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(data)
        log.debug(f"💾 Saved {len(self._recipes)} recipes to {self.path}")
