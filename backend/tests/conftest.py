"""
Shared fixtures: a scripted chat client standing in for the language model,
and the recipe used across the pipeline tests.
"""

import asyncio

import pytest

from backend.mise.core.errors import CredentialMissing
from backend.mise.models.recipe import Ingredient, ParsedRecipe, Step


class ScriptedChatClient:
    """Replays a canned response line by line, like a streamed completion."""

    def __init__(self, response: str, has_key: bool = True, pause: float = 0):
        self.response = response
        self.has_key = has_key
        self.pause = pause
        self.calls = []
        self.lines_sent = 0
        self.closed = False

    def check_credentials(self) -> None:
        if not self.has_key:
            raise CredentialMissing("scripted")

    async def complete(self, system: str, user: str) -> str:
        self.calls.append((system, user))
        return self.response

    async def stream_lines(self, system: str, user: str):
        self.calls.append((system, user))
        try:
            for line in self.response.splitlines(keepends=True):
                await asyncio.sleep(self.pause)
                self.lines_sent += 1
                yield line
        finally:
            self.closed = True


PASTA_EXTRACTION = """\
{
  "recipePresent": true,
  "title": "Weeknight Pasta",
  "summary": "Buttery pasta with scallions, ready in fifteen minutes.",
  "yield": "2 servings",
  "ingredients": [
    {"text": "8oz pasta", "emoji": "🍝"},
    {"text": "2oz butter", "emoji": "🧈"},
    {"text": "pinch salt", "emoji": "🧂"},
    {"text": "2 scallions, finely chopped", "emoji": "🌱"}
  ],
  "steps": [
    {"text": "Salt and boil 2 cups water, add pasta, boil 10 minutes.", "title": "Boil the Pasta"},
    {"text": "Stir in butter and half the scallions.", "title": "Finish with Butter"}
  ]
}
"""

PASTA_ANNOTATION = """\
Here are the annotated steps:
```xml
<step index="1">
<ingredient emoji="🧂">Salt</ingredient> and boil <ingredient emoji="💧">2 cups water</ingredient>, add <ingredient emoji="🍝" details="8oz">pasta</ingredient>, <timer hours="0" minutes="10">boil 10 minutes</timer>.
</step>
<step index="2">
Stir in <ingredient emoji="🧈" details="2oz">butter</ingredient> and <ingredient emoji="🌱" details="1, finely chopped">half the scallions</ingredient>.
</step>
```
"""

PASTA_HTML = """\
<!DOCTYPE html>
<html>
<head>
  <title>Weeknight Pasta | Simple Suppers</title>
  <meta property="og:image" content="/images/pasta.jpg">
  <script type="application/ld+json">
  {"@context": "https://schema.org", "@type": "Recipe", "name": "Weeknight Pasta",
   "recipeIngredient": ["8oz pasta", "2oz butter", "pinch salt", "2 scallions finely chopped"],
   "recipeInstructions": [
     {"@type": "HowToStep", "text": "Salt and boil 2 cups water, add pasta, boil 10 minutes."},
     {"@type": "HowToStep", "text": "Stir in butter and half the scallions."}
   ]}
  </script>
</head>
<body>
  <nav><a href="/">Home</a></nav>
  <h1>Weeknight Pasta</h1>
  <p>Ingredients: 8oz pasta, 2oz butter, pinch salt, 2 scallions finely chopped</p>
  <p>Salt and boil 2 cups water, add pasta, boil 10 minutes. Stir in butter and half the scallions.</p>
</body>
</html>
"""


@pytest.fixture
def scripted_chat():
    return ScriptedChatClient


@pytest.fixture
def pasta_recipe() -> ParsedRecipe:
    return ParsedRecipe(
        title="Weeknight Pasta",
        ingredients=[
            Ingredient(emoji="🍝", text="8oz pasta"),
            Ingredient(emoji="🧈", text="2oz butter"),
            Ingredient(emoji="🧂", text="pinch salt"),
            Ingredient(emoji="🌱", text="2 scallions, finely chopped"),
        ],
        steps=[
            Step(title="Boil the Pasta", text="Salt and boil 2 cups water, add pasta, boil 10 minutes."),
            Step(title="Finish with Butter", text="Stir in butter and half the scallions."),
        ],
    )


@pytest.fixture
def pasta_extraction() -> str:
    return PASTA_EXTRACTION


@pytest.fixture
def pasta_annotation() -> str:
    return PASTA_ANNOTATION


@pytest.fixture
def pasta_html() -> str:
    return PASTA_HTML
