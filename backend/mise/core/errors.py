"""
Failures that abort an add-recipe run.
"""


class PipelineError(Exception):
    """Base exception for the add-recipe pipeline"""

    retryable = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)


class FetchFailure(PipelineError):
    """Raised when the recipe page could not be downloaded"""

    def __init__(self, url: str, reason: str, *, retryable: bool = False):
        self.url = url
        self.reason = reason
        super().__init__(f"Could not fetch {url}: {reason}", retryable=retryable)


class NoTitleFound(PipelineError):
    """Raised when the page has no usable <title>"""

    def __init__(self, url: str | None):
        self.url = url
        super().__init__(f"Page has no title: {url or '(captured html)'}")


class NoRecipePresent(PipelineError):
    """Raised when the extraction model reports there is no recipe on the page"""

    def __init__(self):
        super().__init__("No recipe found on this page")


class InvalidExtractionOutput(PipelineError):
    """Raised when the extraction model's response holds no JSON object at all"""

    def __init__(self, response: str):
        self.response = response
        super().__init__("Recipe extraction returned no usable JSON")


class InvalidAnnotationMarkup(PipelineError):
    """Raised when the final annotation markup cannot be applied"""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Step annotation markup is invalid: {reason}")


class CredentialMissing(PipelineError):
    """Raised before any network call when the model provider has no API key"""

    def __init__(self, provider: str = "openai"):
        self.provider = provider
        super().__init__(f"No API key configured for {provider}")


class LLMFailure(PipelineError):
    """Raised when the completion service errors out"""

    def __init__(self, reason: str, *, retryable: bool = False):
        self.reason = reason
        super().__init__(f"Language model call failed: {reason}", retryable=retryable)


class LLMTimeout(LLMFailure):
    """Raised when a completion call exceeds its timeout"""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"timed out after {timeout:g}s", retryable=True)
