import asyncio

import pytest

from backend.mise.core.config import Settings
from backend.mise.core.errors import (
    CredentialMissing,
    FetchFailure,
    InvalidAnnotationMarkup,
    NoRecipePresent,
    NoTitleFound,
)
from backend.mise.core.pipeline import RecipePipeline
from backend.mise.core.recipe_store import RecipeStore
from backend.mise.models.recipe import IngredientFragment, TimerFragment

URL = "https://simplesuppers.example/pasta"


class RecordingStore(RecipeStore):
    def __init__(self):
        super().__init__()
        self.upserts = []

    def upsert(self, recipe):
        self.upserts.append(recipe.model_copy(deep=True))
        return super().upsert(recipe)


class FakeFetch:
    def __init__(self, html: str = "", error: Exception = None):
        self.html = html
        self.error = error
        self.urls = []

    async def __call__(self, url: str) -> str:
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.html


@pytest.fixture
def settings():
    return Settings(openai_api_key="sk-test")


@pytest.fixture
def store():
    return RecordingStore()


def _pipeline(store, settings, extraction, annotation, fetch=None):
    return RecipePipeline(store, extraction, annotation, settings, fetch=fetch or FakeFetch())


def test_add_recipe_end_to_end(store, settings, scripted_chat, pasta_html, pasta_extraction, pasta_annotation):
    fetch = FakeFetch(pasta_html)
    extraction = scripted_chat(pasta_extraction)
    pipeline = _pipeline(store, settings, extraction, scripted_chat(pasta_annotation), fetch)

    recipe = asyncio.run(pipeline.add_recipe(URL, recipe_id="pasta"))

    assert fetch.urls == [URL]
    assert recipe.id == "pasta"
    assert recipe.title == "Weeknight Pasta | Simple Suppers"
    assert recipe.hero_image == "https://simplesuppers.example/images/pasta.jpg"
    assert recipe.raw_context.startswith("# INGREDIENTS\n- 8oz pasta")
    assert not recipe.generating
    assert recipe.error is None
    assert store.get("pasta") == recipe

    # The structured data reaches the model ahead of the page text
    assert "# STEPS" in extraction.calls[0][1]

    parsed = recipe.parsed
    assert parsed.title == "Weeknight Pasta"
    assert len(parsed.ingredients) == 4
    first = parsed.steps[0].formatted_text
    pasta = [f.ingredient for f in first if isinstance(f, IngredientFragment) and f.ingredient.text == "pasta"]
    assert pasta and pasta[0].missing_details
    timers = [f.timer for f in first if isinstance(f, TimerFragment)]
    assert [(t.seconds, t.repeats) for t in timers] == [(600, None)]


def test_upserts_only_grow(store, settings, scripted_chat, pasta_html, pasta_extraction, pasta_annotation):
    pipeline = _pipeline(
        store, settings, scripted_chat(pasta_extraction), scripted_chat(pasta_annotation), FakeFetch(pasta_html)
    )
    asyncio.run(pipeline.add_recipe(URL, recipe_id="pasta"))

    assert len(store.upserts) > 5
    assert all(r.parsed is not None for r in store.upserts)
    assert all(r.generating for r in store.upserts[:-1])
    assert not store.upserts[-1].generating

    ingredient_counts = [len(r.parsed.ingredients) for r in store.upserts]
    assert ingredient_counts == sorted(ingredient_counts)
    step_counts = [len(r.parsed.steps) for r in store.upserts]
    assert step_counts == sorted(step_counts)

    annotated = [r for r in store.upserts if r.parsed.steps and r.parsed.steps[0].formatted_text is not None]
    assert annotated
    # Annotation never changes the step count fixed by extraction
    assert {len(r.parsed.steps) for r in annotated} == {2}


def test_captured_html_skips_fetch(store, settings, scripted_chat, pasta_html, pasta_extraction, pasta_annotation):
    fetch = FakeFetch(error=AssertionError("fetch should not be called"))
    pipeline = _pipeline(store, settings, scripted_chat(pasta_extraction), scripted_chat(pasta_annotation), fetch)

    recipe = asyncio.run(pipeline.add_recipe(None, html=pasta_html))

    assert fetch.urls == []
    assert recipe.source_url is None
    assert recipe.id in store


def test_no_recipe_leaves_nothing_behind(store, settings, scripted_chat, pasta_html):
    extraction = scripted_chat('{\n"recipePresent": true,\n"title": "About Us",\n"recipePresent": false\n}\n')
    annotation = scripted_chat("unused")
    pipeline = _pipeline(store, settings, extraction, annotation, FakeFetch(pasta_html))

    with pytest.raises(NoRecipePresent):
        asyncio.run(pipeline.add_recipe(URL, recipe_id="about"))

    # A partial recipe was shown while streaming, then removed
    assert store.upserts
    assert "about" not in store
    assert annotation.calls == []


def test_annotation_failure_keeps_plain_recipe(store, settings, scripted_chat, pasta_html, pasta_extraction):
    pipeline = _pipeline(
        store, settings, scripted_chat(pasta_extraction), scripted_chat("No can do."), FakeFetch(pasta_html)
    )

    with pytest.raises(InvalidAnnotationMarkup):
        asyncio.run(pipeline.add_recipe(URL, recipe_id="pasta"))

    recipe = store.get("pasta")
    assert recipe.error
    assert not recipe.generating
    assert len(recipe.parsed.steps) == 2
    assert all(step.formatted_text is None for step in recipe.parsed.steps)


def test_missing_credentials_fail_before_fetch(store, settings, scripted_chat, pasta_html):
    fetch = FakeFetch(pasta_html)
    pipeline = _pipeline(store, settings, scripted_chat("", has_key=False), scripted_chat(""), fetch)

    with pytest.raises(CredentialMissing):
        asyncio.run(pipeline.add_recipe(URL))

    assert fetch.urls == []
    assert len(store) == 0


def test_fetch_failure_stores_nothing(store, settings, scripted_chat):
    fetch = FakeFetch(error=FetchFailure(URL, "HTTP 503", retryable=True))
    pipeline = _pipeline(store, settings, scripted_chat(""), scripted_chat(""), fetch)

    with pytest.raises(FetchFailure) as info:
        asyncio.run(pipeline.add_recipe(URL))

    assert info.value.retryable
    assert store.upserts == []


def test_page_without_title(store, settings, scripted_chat):
    extraction = scripted_chat("{}")
    pipeline = _pipeline(store, settings, extraction, scripted_chat(""))

    with pytest.raises(NoTitleFound):
        asyncio.run(pipeline.add_recipe(None, html="<html><body><p>Some recipe</p></body></html>"))

    assert extraction.calls == []
    assert len(store) == 0


def test_cancel_clears_generating(store, settings, scripted_chat, pasta_html, pasta_extraction, pasta_annotation):
    extraction = scripted_chat(pasta_extraction, pause=0.02)
    pipeline = _pipeline(store, settings, extraction, scripted_chat(pasta_annotation), FakeFetch(pasta_html))

    async def run():
        pipeline.start(URL, recipe_id="slow")
        while "slow" not in store:
            await asyncio.sleep(0.01)
        assert pipeline.is_running("slow")
        assert await pipeline.cancel("slow")
        return store.get("slow")

    recipe = asyncio.run(run())

    assert not recipe.generating
    assert recipe.error is None
    assert extraction.closed
    assert extraction.lines_sent < len(pasta_extraction.splitlines())


def test_concurrent_runs_stay_separate(store, settings, scripted_chat, pasta_html, pasta_extraction, pasta_annotation):
    pipeline = _pipeline(
        store,
        settings,
        scripted_chat(pasta_extraction, pause=0.001),
        scripted_chat(pasta_annotation, pause=0.001),
        FakeFetch(pasta_html),
    )

    async def run():
        return await asyncio.gather(
            pipeline.add_recipe(URL, recipe_id="one"),
            pipeline.add_recipe(URL, recipe_id="two"),
        )

    one, two = asyncio.run(run())

    assert len(store) == 2
    assert one.parsed == two.parsed
    assert not store.get("one").generating
    assert not store.get("two").generating
    assert {r.id for r in store.upserts} == {"one", "two"}


def test_finished_run_is_saved(tmp_path, settings, scripted_chat, pasta_html, pasta_extraction, pasta_annotation):
    path = tmp_path / "recipes.json"
    store = RecipeStore(path)
    pipeline = _pipeline(
        store, settings, scripted_chat(pasta_extraction), scripted_chat(pasta_annotation), FakeFetch(pasta_html)
    )
    asyncio.run(pipeline.add_recipe(URL, recipe_id="pasta"))

    loaded = RecipeStore(path)
    loaded.load()
    assert loaded.get("pasta").parsed.title == "Weeknight Pasta"
    assert loaded.get("pasta").parsed.steps[0].formatted_text
