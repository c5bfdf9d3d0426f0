"""
Parser for the inline step annotation markup.

    <step index="1">
    <ingredient emoji="🧂">Salt</ingredient> and boil water, then
    <timer hours="0" minutes="10">boil for 10 minutes</timer>.
    </step>

The markup is read with BeautifulSoup's html.parser builder, which accepts
unescaped ampersands, a missing root element and unclosed tags.  That matters
because the parser runs on every streamed chunk, and mid-stream the last
<step> (and often the last <ingredient>) is still open.
"""

import logging
import re
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup, NavigableString, ParserRejectedMarkup, Tag
from bs4.element import Comment, Declaration, Doctype, ProcessingInstruction

from ..core.errors import InvalidAnnotationMarkup
from ..models.recipe import (
    CookTimer,
    FormattedTextFragment,
    Ingredient,
    IngredientFragment,
    ParsedRecipe,
    PlainFragment,
    TimerFragment,
)

log = logging.getLogger(__name__)

OPENING_FENCE = re.compile(r"```[^\n`]*\n")
UNFINISHED_TAG = re.compile(r"<[^<>]*$")


def fenced_block(text: str) -> Optional[str]:
    """
    Return the contents of the first fenced code block in ``text``.

    A block whose closing fence hasn't been written yet still counts; its
    contents run to the end of the text.
    """
    match = OPENING_FENCE.search(text)
    if match is None:
        return None
    body = text[match.end():]
    end = body.find("```")
    if end < 0:
        return body.rstrip("`")
    return body[:end]


def apply_markup(markup: str, parsed: ParsedRecipe) -> ParsedRecipe:
    """
    Return a copy of ``parsed`` with each step's formatted_text rebuilt from markup.

    <step> elements are matched to steps by position.  Extra elements are
    ignored and steps without an element keep what they had, so the step
    count never changes.
    """
    # A tag cut off mid-stream would otherwise come back as literal text
    markup = UNFINISHED_TAG.sub("", markup)
    try:
        soup = BeautifulSoup(markup, "html.parser")
    except ParserRejectedMarkup as e:
        raise InvalidAnnotationMarkup(str(e)) from e

    elements = soup.find_all("step")
    if not elements:
        raise InvalidAnnotationMarkup("no <step> elements")
    if len(elements) > len(parsed.steps):
        log.debug(f"Ignoring {len(elements) - len(parsed.steps)} extra <step> elements")

    steps = list(parsed.steps)
    for i, element in enumerate(elements[: len(steps)]):
        steps[i] = steps[i].model_copy(update={"formatted_text": step_fragments(element)})
    return parsed.model_copy(update={"steps": steps})


def step_fragments(element: Tag) -> List[FormattedTextFragment]:
    fragments: List[FormattedTextFragment] = []
    for child in element.children:
        if isinstance(child, (Comment, Doctype, Declaration, ProcessingInstruction)):
            continue
        if isinstance(child, NavigableString):
            text = _trim(str(child))
            if text:
                fragments.append(PlainFragment(text=text))
        elif isinstance(child, Tag):
            # An unclosed <step> swallows the next one; that one is handled on its own
            if child.name == "step":
                continue
            fragment = _tag_fragment(child)
            if fragment is not None:
                fragments.append(fragment)
    return fragments


def _tag_fragment(tag: Tag) -> Optional[FormattedTextFragment]:
    text = _trim(tag.get_text())

    if tag.name == "ingredient":
        emoji = (tag.get("emoji") or "").strip()
        if not emoji:
            return None
        details = (tag.get("details") or tag.get("missing-details") or "").strip()
        return IngredientFragment(
            ingredient=Ingredient(emoji=emoji, text=text, missing_details=details or None)
        )

    if tag.name == "timer":
        hours = _int(tag.get("hours")) or 0
        minutes = _int(tag.get("minutes")) or 0
        return TimerFragment(
            timer=CookTimer(
                display_text=text,
                seconds=max(0, hours * 3600 + minutes * 60),
                repeats=_int(tag.get("repeat")),
            )
        )

    if not text:
        return None
    return PlainFragment(text=text)


def _int(value) -> Optional[int]:
    if not isinstance(value, str):
        return None
    # The prompt's JSX-ish examples sometimes come back as repeat={2}
    value = value.strip().strip("{}\"' ")
    try:
        return int(value)
    except ValueError:
        return None


def _trim(text: str) -> str:
    return text.strip("\r\n")


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().lower()


def verbatim_violations(parsed: ParsedRecipe) -> List[Tuple[int, str]]:
    """
    List (step index, text) for ingredient and timer mentions that don't appear in
    the step's original text.  The annotation model is told to wrap, not rewrite,
    so anything listed here is text the model changed.
    """
    violations = []
    for i, step in enumerate(parsed.steps):
        source = _normalize(step.text)
        for fragment in step.formatted_text or []:
            if isinstance(fragment, IngredientFragment):
                text = fragment.ingredient.text
            elif isinstance(fragment, TimerFragment):
                text = fragment.timer.display_text
            else:
                continue
            if _normalize(text) not in source:
                violations.append((i, text))
    return violations
