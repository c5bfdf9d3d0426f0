"""
Best-effort parsing of a JSON object that is still being streamed.

pydantic-core's partial mode does the repair: open arrays and objects are
closed, keys without a value are dropped, and a string value that is still
being written is kept as far as it goes.
"""

import json
import logging
from typing import Any, Optional

from pydantic_core import from_json

log = logging.getLogger(__name__)

_DECODER = json.JSONDecoder()


def parse_partial_json(text: str) -> Optional[Any]:
    """
    Parse the first JSON object in ``text``, tolerating truncation.

    Leading chatter or a code fence before the object is ignored, as is
    anything after a complete object.  Returns None when no object has
    started yet, or when the prefix can't be read as one.
    """
    start = text.find("{")
    if start < 0:
        return None
    text = text[start:]

    try:
        value, _ = _DECODER.raw_decode(text)
        return value
    except json.JSONDecodeError:
        pass

    try:
        return from_json(text.rstrip(), allow_partial="trailing-strings")
    except ValueError as e:
        log.debug(f"Partial JSON not readable yet: {e}")
        return None
