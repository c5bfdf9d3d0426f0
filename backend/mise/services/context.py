"""
Builds the bounded text context handed to the extraction model.
"""

import re
from typing import List, Optional

from .json_ld import JsonLDRecipe

# Rough average for English prose; keeps us clear of the model's real tokenizer limits
CHARS_PER_TOKEN = 4


def format_json_ld(ld: JsonLDRecipe) -> str:
    lines: List[str] = []
    if ld.ingredients:
        lines.append("# INGREDIENTS")
        lines += [f"- {i}" for i in ld.ingredients]
    if ld.steps:
        lines.append("# STEPS")
        lines += [f"- {s}" for s in ld.steps]
    if ld.recipe_yield:
        lines.append("# YIELD")
        lines.append(ld.recipe_yield)
    if ld.cook_time:
        lines.append("# COOK TIME (json LD format)")
        lines.append(ld.cook_time)
    if ld.prep_time:
        lines.append("# PREP TIME (json LD format)")
        lines.append(ld.prep_time)
    return "\n".join(lines)


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    # Don't leave half a word at the end
    match = re.search(r"\s\S*$", cut)
    if match and match.start() > max_chars // 2:
        cut = cut[: match.start()]
    return cut.rstrip()


def assemble_context(json_ld: Optional[JsonLDRecipe], page_text: str, max_tokens: int = 5000) -> str:
    """Structured data first so it survives truncation, then the page text."""
    blocks = []
    if json_ld is not None and not json_ld.is_empty:
        blocks.append(format_json_ld(json_ld))
    if page_text.strip():
        blocks.append(page_text.strip())
    return truncate_to_tokens("\n\n".join(blocks), max_tokens)
