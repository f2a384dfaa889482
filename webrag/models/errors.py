from __future__ import annotations


class ConfigurationError(ValueError):
    """A required setting (API key, base URL, model) is missing or invalid."""


class SearchError(RuntimeError):
    """A search API call failed (HTTP status, network or malformed body)."""


class ReaderError(RuntimeError):
    """The remote reader returned nothing usable for a URL."""


STAGE_LABELS = {
    "query_generation": "Query generation",
    "search": "Web search",
    "refinement": "Result refinement",
    "prompt_assembly": "Prompt assembly",
    "completion": "Answer generation",
}


class PipelineStageError(RuntimeError):
    """A fatal failure inside one stage of a pipeline run."""

    def __init__(self, stage: str, error: BaseException):
        self.stage = stage
        self.error = error
        super().__init__(f"{STAGE_LABELS.get(stage, stage)} failed: {error}")


def describe_failure(error: BaseException) -> str:
    """Render the message that replaces the assistant turn after a fatal error."""
    if isinstance(error, PipelineStageError):
        stage = STAGE_LABELS.get(error.stage, error.stage)
        detail = str(error.error) or type(error.error).__name__
    else:
        stage = "Web search"
        detail = str(error) or type(error).__name__
    return (
        "⚠️ Web Search Error\n\n"
        f"{stage} failed and the request could not be completed.\n\n"
        f"Error details: {detail}\n\n"
        "Please try again or disable web search to use offline mode."
    )
