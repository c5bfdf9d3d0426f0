"""
Stage one of the language-model work: page context -> ParsedRecipe.

The model answers with a single JSON object which is parsed after every
streamed line, so partially-extracted recipes show up while it is still
writing.
"""

import logging
from contextlib import aclosing
from typing import AsyncIterator, List, Optional

from ..core.errors import InvalidExtractionOutput, NoRecipePresent
from ..models.recipe import Ingredient, ParsedRecipe, Step
from .context import truncate_to_tokens
from .llm_client import ChatClient
from .partial_json import parse_partial_json

log = logging.getLogger(__name__)

SYSTEM_PROMPT = """
Your job is to extract a recipe from a webpage and translate it into a specific JSON format.

I'll give you a recipe, scraped from a webpage.

You'll translate the recipe into JSON according to my schema, without changing any details of the recipe.
""".strip()

USER_TEMPLATE = """
<recipe title='{title}'>
{context}
</recipe>

OK, that was the recipe webpage. Now, translate it
into valid JSON, according to this exact Typescript schema:
```
interface Recipe {{
    recipePresent: boolean // Does a recipe exist in the webpage? true or false
    title: string // Remove SEO cruft from original title if present
    summary: string // ~10 word plain-English description of the dish
    ingredients: Ingredient[]
    steps: Step[]
    yield?: string // e.g. "4 servings", if mentioned
    prepTime?: string // e.g. "15 minutes", if mentioned
    cookTime?: string // e.g. "1 hour", if mentioned
}}

interface Ingredient {{
    text: string // e.g. "1.5 tsp cumin" or "1 cup chopped brocolli or bok choy"
    emoji: string // closest related food or drink emoji
}}

interface Step {{
    text: string // the text of the step. Do not change this from how it appears on the page, other than cleaning up formatting.
    title: string // a descriptive 2-4 word title, like "Braise the Beef" or "Cook the Couscous". Avoid titles like "Step 1" -- write a more descriptive title instead. Each step's title should be unique; no repeats.
}}
```
Put "recipePresent" first. Respond with the JSON object only.
""".strip()


def build_user_prompt(title: str, context: str, max_tokens: int = 4000) -> str:
    return USER_TEMPLATE.format(title=title, context=truncate_to_tokens(context, max_tokens))


def recipe_from_output(output: dict, fallback_title: str) -> ParsedRecipe:
    """Build a ParsedRecipe from whatever fields of the model's JSON have arrived."""
    ingredients: List[Ingredient] = []
    for item in _list(output.get("ingredients")):
        text, emoji = _text(item.get("text")), _text(item.get("emoji"))
        if text and emoji:
            ingredients.append(Ingredient(text=text, emoji=emoji))

    steps: List[Step] = []
    for item in _list(output.get("steps")):
        text, title = _text(item.get("text")), _text(item.get("title"))
        if text and title:
            steps.append(Step(text=text, title=title))

    return ParsedRecipe(
        title=_text(output.get("title")) or fallback_title,
        summary=_text(output.get("summary")),
        recipe_yield=_text(output.get("yield")),
        prep_time=_text(output.get("prepTime")),
        cook_time=_text(output.get("cookTime")),
        ingredients=ingredients,
        steps=steps,
    )


async def extract_recipe(
    title: str,
    context: str,
    llm: ChatClient,
    max_tokens: int = 4000,
) -> AsyncIterator[ParsedRecipe]:
    """
    Yield increasingly complete ParsedRecipes; the last one is authoritative.

    Raises NoRecipePresent as soon as the model says the page has no recipe,
    and InvalidExtractionOutput if the finished response holds no JSON object.
    """
    user = build_user_prompt(title, context, max_tokens)
    buffer = ""
    last: Optional[ParsedRecipe] = None
    chunks = 0

    async with aclosing(llm.stream_lines(SYSTEM_PROMPT, user)) as stream:
        async for line in stream:
            buffer += line
            chunks += 1
            parsed = _parse(buffer, title)
            if parsed is None or parsed == last:
                continue
            last = parsed
            log.debug(f"🧾 Extraction chunk {chunks}: {len(parsed.ingredients)} ingredients, {len(parsed.steps)} steps")
            yield parsed

    if last is None:
        log.error(f"❌ Extraction produced no JSON ({len(buffer)} characters)")
        raise InvalidExtractionOutput(buffer)
    log.info(f"✅ Extracted '{last.title}': {len(last.ingredients)} ingredients, {len(last.steps)} steps")


def _parse(buffer: str, fallback_title: str) -> Optional[ParsedRecipe]:
    output = parse_partial_json(buffer)
    if not isinstance(output, dict) or not output:
        return None
    if output.get("recipePresent") is False:
        log.info("🚫 Model reports no recipe on this page")
        raise NoRecipePresent()
    return recipe_from_output(output, fallback_title)


def _list(value) -> List[dict]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def _text(value) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
