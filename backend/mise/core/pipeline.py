import asyncio
import logging
import uuid
from contextlib import aclosing
from typing import Awaitable, Callable, Dict, Optional

from ..models.recipe import ParsedRecipe, Recipe
from ..services.context import assemble_context
from ..services.html_extractor import extract_page, fetch_html
from ..services.llm_client import ChatClient
from ..services.recipe_extractor import extract_recipe
from ..services.step_annotator import annotate_steps
from .config import Settings, get_settings
from .errors import FetchFailure, NoRecipePresent, NoTitleFound, PipelineError
from .recipe_store import RecipeStore

log = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[str]]


class RecipePipeline:
    """
    Turns a recipe webpage into a stored, annotated Recipe.

    Each add_recipe call is independent and writes only to its own recipe id,
    so any number can run at once against the same store.
    """

    def __init__(
        self,
        store: RecipeStore,
        extraction_llm: ChatClient,
        annotation_llm: ChatClient,
        settings: Optional[Settings] = None,
        fetch: Fetcher = fetch_html,
    ):
        self.store = store
        self.extraction_llm = extraction_llm
        self.annotation_llm = annotation_llm
        self.settings = settings or get_settings()
        self.fetch = fetch
        self.tasks: Dict[str, asyncio.Task] = {}

    async def add_recipe(
        self,
        url: Optional[str],
        html: Optional[str] = None,
        recipe_id: Optional[str] = None,
    ) -> Recipe:
        """
        Run every stage for one page, upserting after each streamed update.

        Failures are raised after the store has been left consistent: a recipe
        that never got a parsed value is not stored, one that did is kept with
        ``error`` set and ``generating`` cleared.
        """
        recipe_id = recipe_id or str(uuid.uuid4())
        recipe: Optional[Recipe] = None
        try:
            recipe = await self._prepare(url, html, recipe_id)
            await self._extract(recipe)
            await self._annotate(recipe)
        except NoRecipePresent:
            if self.store.delete(recipe_id):
                log.info(f"🗑️ Removed partial recipe {recipe_id}")
            raise
        except PipelineError as e:
            log.error(f"❌ Adding recipe {recipe_id} failed: {e.message}")
            await self._finish(recipe, error=e.message)
            raise
        except asyncio.CancelledError:
            log.info(f"🛑 Adding recipe {recipe_id} was cancelled")
            await self._finish(recipe)
            raise
        except Exception:
            log.exception(f"💥 Unexpected error adding recipe {recipe_id}")
            await self._finish(recipe, error="Something went wrong adding this recipe")
            raise

        await self._finish(recipe)
        log.info(f"🎉 Added recipe {recipe_id}: '{recipe.parsed.title}'")
        return self.store.get(recipe_id)

    def check_credentials(self) -> None:
        self.extraction_llm.check_credentials()
        self.annotation_llm.check_credentials()

    async def _prepare(self, url: Optional[str], html: Optional[str], recipe_id: str) -> Recipe:
        # Fail before any network call when the model can't be reached anyway
        self.check_credentials()

        if html is None:
            if not url:
                raise FetchFailure("(none)", "no URL or HTML given")
            html = await self.fetch(url)

        page = extract_page(html, url)
        if not page.title:
            raise NoTitleFound(url)

        context = assemble_context(page.json_ld, page.text, self.settings.context_max_tokens)
        log.info(
            f"📄 '{page.title}': {len(context)} characters of context, "
            f"json-ld {'found' if page.json_ld else 'absent'}"
        )
        return Recipe(
            id=recipe_id,
            source_url=url,
            title=page.title,
            raw_context=context,
            hero_image=page.hero_image,
            generating=True,
        )

    async def _extract(self, recipe: Recipe) -> None:
        stream = extract_recipe(
            recipe.title,
            recipe.raw_context,
            self.extraction_llm,
            self.settings.extraction_max_tokens,
        )
        async with aclosing(stream) as updates:
            async for parsed in updates:
                recipe.parsed = parsed
                self.store.upsert(recipe)

    async def _annotate(self, recipe: Recipe) -> None:
        try:
            async with aclosing(annotate_steps(recipe.parsed, self.annotation_llm)) as updates:
                async for annotated in updates:
                    recipe.parsed = annotated
                    self.store.upsert(recipe)
        except PipelineError:
            # Plain step text is still a usable recipe
            recipe.parsed = without_annotations(recipe.parsed)
            raise

    async def _finish(self, recipe: Optional[Recipe], error: Optional[str] = None) -> None:
        if recipe is None or recipe.parsed is None:
            return
        recipe.generating = False
        recipe.error = error
        self.store.upsert(recipe)
        await self.store.save_async()

    def start(self, url: Optional[str], html: Optional[str] = None, recipe_id: Optional[str] = None) -> str:
        """Run add_recipe in the background and return the recipe id."""
        recipe_id = recipe_id or str(uuid.uuid4())
        task = asyncio.create_task(self.add_recipe(url, html, recipe_id))
        self.tasks[recipe_id] = task
        task.add_done_callback(lambda t: self._task_done(recipe_id, t))
        return recipe_id

    async def cancel(self, recipe_id: str) -> bool:
        """Cancel a background run and wait until it has cleaned up."""
        task = self.tasks.get(recipe_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    def is_running(self, recipe_id: str) -> bool:
        task = self.tasks.get(recipe_id)
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        tasks = [t for t in self.tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _task_done(self, recipe_id: str, task: asyncio.Task) -> None:
        if self.tasks.get(recipe_id) is task:
            del self.tasks[recipe_id]
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, PipelineError):
            log.warning(f"⚠️ Background add of {recipe_id} ended with: {error}")


def without_annotations(parsed: ParsedRecipe) -> ParsedRecipe:
    steps = [step.model_copy(update={"formatted_text": None}) for step in parsed.steps]
    return parsed.model_copy(update={"steps": steps})
