"""
JSON-LD (Schema.org) recipe extraction.

Recipe sites embed search-engine markup that is shorter and more reliable than
the visible prose.  It is often partial, so whatever is found here is used as
extra context for the model rather than as the recipe itself.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from bs4 import BeautifulSoup

log = logging.getLogger(__name__)

JSON_LD_TYPE = re.compile(r"application/ld\+json", re.I)


@dataclass
class JsonLDRecipe:
    """Recipe facts gathered from every structured-data block on a page."""

    ingredients: List[str] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)
    recipe_yield: Optional[str] = None
    cook_time: Optional[str] = None
    prep_time: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.ingredients and not self.steps


def json_ld_blocks(soup: BeautifulSoup) -> List[Any]:
    """Parse every JSON-LD script on the page, skipping ones that aren't valid JSON."""
    blocks = []
    for script in soup.find_all("script", attrs={"type": JSON_LD_TYPE}):
        text = script.string or script.get_text()
        if not text or not text.strip():
            continue
        try:
            blocks.append(json.loads(text))
        except json.JSONDecodeError as e:
            log.debug(f"Skipping malformed JSON-LD block: {e}")
    return blocks


def extract_json_ld_recipe(blocks: Iterable[Any]) -> Optional[JsonLDRecipe]:
    """
    Walk the JSON-LD trees and collect Recipe and HowToStep data.

    Children are visited before the node itself, so steps nested inside a
    Recipe's instructions are collected in document order.

    Returns None when no ingredients or steps were found.
    """
    ld = JsonLDRecipe()
    for block in blocks:
        _visit(block, ld)
    if ld.is_empty:
        return None
    return ld


def _visit(node: Any, ld: JsonLDRecipe) -> None:
    if isinstance(node, dict):
        for value in node.values():
            _visit(value, ld)
    elif isinstance(node, list):
        for value in node:
            _visit(value, ld)

    if not isinstance(node, dict):
        return
    types = _node_types(node.get("@type"))

    if "Recipe" in types:
        ingredients = node.get("recipeIngredient")
        if isinstance(ingredients, list):
            ld.ingredients += [i for i in ingredients if isinstance(i, str)]
        instructions = node.get("recipeInstructions")
        if isinstance(instructions, str) and instructions.strip():
            ld.steps.append(instructions)
        if ld.recipe_yield is None:
            ld.recipe_yield = _first_string(node.get("recipeYield"))
        if ld.cook_time is None:
            ld.cook_time = _first_string(node.get("cookTime"))
        if ld.prep_time is None:
            ld.prep_time = _first_string(node.get("prepTime"))

    if "HowToStep" in types:
        text = node.get("text")
        if isinstance(text, str):
            ld.steps.append(text)


def _node_types(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return value
    return []


def _first_string(value: Any) -> Optional[str]:
    # recipeYield is frequently ["4", "4 servings"]
    if isinstance(value, list):
        value = next((v for v in value if isinstance(v, str)), None)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
