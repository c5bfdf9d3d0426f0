from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, conint


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Ingredient(BaseModel):
    emoji: str
    text: str
    missing_details: Optional[str] = None


class CookTimer(BaseModel):
    """A tappable cook time. Compared by value, so the same timer tapped twice is one timer."""

    model_config = ConfigDict(frozen=True)

    display_text: str
    seconds: conint(ge=0)
    repeats: Optional[int] = None


class PlainFragment(BaseModel):
    kind: Literal["plain"] = "plain"
    text: str


class IngredientFragment(BaseModel):
    kind: Literal["ingredient"] = "ingredient"
    ingredient: Ingredient


class TimerFragment(BaseModel):
    kind: Literal["timer"] = "timer"
    timer: CookTimer


FormattedTextFragment = Annotated[
    Union[PlainFragment, IngredientFragment, TimerFragment],
    Field(discriminator="kind"),
]


class Step(BaseModel):
    title: str
    text: str
    formatted_text: Optional[List[FormattedTextFragment]] = None


class ParsedRecipe(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    summary: Optional[str] = None
    recipe_yield: Optional[str] = Field(default=None, alias="yield")
    cook_time: Optional[str] = None
    prep_time: Optional[str] = None
    ingredients: List[Ingredient] = []
    steps: List[Step] = []


class Recipe(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_url: Optional[str] = None
    added_at: datetime = Field(default_factory=_now)
    title: str
    raw_context: str = ""
    hero_image: Optional[str] = None
    parsed: Optional[ParsedRecipe] = None
    pinned_at: Optional[datetime] = None
    generating: bool = False
    error: Optional[str] = None

    @property
    def sort_date(self) -> datetime:
        return self.pinned_at or self.added_at
