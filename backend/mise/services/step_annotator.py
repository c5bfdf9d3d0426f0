"""
Stage two of the language-model work: annotate step prose with ingredient and
timer tags so the UI can render ingredient chips and tappable timers.
"""

import logging
from contextlib import aclosing
from typing import AsyncIterator, Optional

from ..core.errors import InvalidAnnotationMarkup
from ..models.recipe import ParsedRecipe
from .llm_client import ChatClient
from .markup_parser import apply_markup, fenced_block, verbatim_violations

log = logging.getLogger(__name__)

SYSTEM_PROMPT = """
I'm making an app that formats recipes to make them easier to read and follow.

I'd like to display ingredients in a special UI with emoji icons, and always display quantities when ingredients are mentioned.

I'd like to turn mentions of time ("cook for 10 minutes") into clickable buttons.

I'll give you a recipe. Your job is to rewrite each step's text using a special XML syntax. When you see certain types of phrases, like references to an ingredient, or references to a cooking time, wrap that text in a special XML annotation. These annotations will be formatted nicely to be more readable.

Here are the very important rules for rewriting each step:
- Wrap each step in <step> tags. Keep the number and order of steps the same.
- Wrap each mention of an ingredient in <ingredient> tags. If the INGREDIENTS LIST mentions an amount or preparation (e.g. finely chopped), but it's not mentioned in the step, add a `details` attribute to fill it in. It should be possible to read the new recipe without referring back to the ingredients list for amounts and other details. If the recipe says something like "the remaining scallions" or "half the butter," do the math.
- Wrap each mention of a cook time in a <timer> tag, so the user can tap to set a timer. Use `repeat` for phrases like "4 minutes per side".
- Never change the words inside a tag: wrap the text exactly as written, don't rewrite it.
- Besides these rules, keep the text and meaning of each step the same.

Ingredient tags look like this: <ingredient emoji="🧈" details="10 oz">butter or ghee</ingredient>
Timer tags look like this: <timer hours="0" minutes="6" repeat="2">cook 6 minutes each side</timer>
Step tags look like this: <step index="N"> (one-indexed)

Put your whole answer inside a single ``` code block.

# EXAMPLE
Ingredients: 8oz pasta, 2oz butter, pinch of salt, 2 scallions (finely chopped).
Steps:
1. Salt and boil 2 cups water on high heat, then add pasta and boil for 10 minutes.
2. Stir in butter and half the scallions.
3. Garnish with remaining scallions and serve.

Your output:
```
<step index="1">
<ingredient emoji="🧂">Salt</ingredient> and boil <ingredient emoji="💧">2 cups water</ingredient> on high heat, then add <ingredient emoji="🍝" details="8oz">pasta</ingredient> and <timer hours="0" minutes="10" repeat="1">boil for 10 minutes</timer>.
</step>
<step index="2">
Stir in <ingredient emoji="🧈" details="2oz">butter</ingredient> and <ingredient emoji="🌱" details="1, finely chopped">half the scallions</ingredient>.
</step>
<step index="3">
Garnish with <ingredient emoji="🌱" details="1, finely chopped">remaining scallions</ingredient> and serve.
</step>
```
""".strip()


def build_user_prompt(parsed: ParsedRecipe) -> str:
    ingredients = "\n".join(f"- {i.text}" for i in parsed.ingredients)
    steps = "\n".join(f"{n}. {step.text}" for n, step in enumerate(parsed.steps, start=1))
    return f"""Below, here's the real recipe:
[BEGIN RECIPE]
Ingredients:
{ingredients}
Steps:
{steps}
[END RECIPE]

Now, rewrite this recipe's {len(parsed.steps)} steps using the precise rules and XML schema described above:"""


def _apply(buffer: str, parsed: ParsedRecipe) -> ParsedRecipe:
    markup = fenced_block(buffer)
    if markup is None:
        # Some models skip the fence; take the raw answer if it has step tags
        if "<step" not in buffer:
            raise InvalidAnnotationMarkup("no fenced code block")
        markup = buffer
    return apply_markup(markup, parsed)


async def annotate_steps(parsed: ParsedRecipe, llm: ChatClient) -> AsyncIterator[ParsedRecipe]:
    """
    Yield copies of ``parsed`` whose steps carry progressively more formatted_text.

    Chunks that can't be applied yet are skipped; only a final response that
    can't be applied raises InvalidAnnotationMarkup.
    """
    if not parsed.steps:
        log.info("No steps to annotate")
        return

    user = build_user_prompt(parsed)
    buffer = ""
    last: Optional[ParsedRecipe] = None
    error: Optional[InvalidAnnotationMarkup] = None
    chunks = 0

    async with aclosing(llm.stream_lines(SYSTEM_PROMPT, user)) as stream:
        async for line in stream:
            buffer += line
            chunks += 1
            try:
                annotated = _apply(buffer, parsed)
            except InvalidAnnotationMarkup as e:
                # Expected while the opening fence or first <step> hasn't arrived
                log.debug(f"Annotation chunk {chunks} not applicable yet: {e.reason}")
                error = e
                continue
            error = None
            if annotated == last:
                continue
            last = annotated
            yield annotated

    if error is not None or last is None:
        log.error(f"❌ Could not apply final annotation markup ({len(buffer)} characters)")
        raise error or InvalidAnnotationMarkup("empty response")

    for index, text in verbatim_violations(last):
        log.warning(f"⚠️ Step {index + 1}: annotated text '{text}' isn't in the original step")
    log.info(f"✅ Annotated {len(last.steps)} steps in {chunks} chunks")
