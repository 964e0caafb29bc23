"""Content screening via the OpenAI moderation endpoint.

The moderation service is an external collaborator: we only ask whether a
text is flagged. Provider outages fail open after retries.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional
import logging

from openai import OpenAI
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModerationResult:
    flagged: bool
    categories: Dict[str, bool] = field(default_factory=dict)


NOT_FLAGGED = ModerationResult(flagged=False)


class ContentScreen:
    """Ask the moderation model whether inbound text is acceptable."""

    def __init__(self, client: Optional[OpenAI] = None, model: str = "omni-moderation-latest"):
        self.client = client
        self.model = model

    @classmethod
    def from_config(cls, config) -> "ContentScreen":
        if not config.moderation_enabled or not config.openai_api_key:
            logger.info("Content screening disabled")
            return cls(client=None, model=config.moderation_model)
        return cls(client=OpenAI(api_key=config.openai_api_key), model=config.moderation_model)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def check(self, text: Optional[str]) -> ModerationResult:
        if not text or not text.strip() or not self.enabled:
            return NOT_FLAGGED
        try:
            return self._moderate(text)
        except Exception as e:
            logger.error("Moderation call failed, allowing content: %s", e)
            return NOT_FLAGGED

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type((Exception,)),
        reraise=True
    )
    def _moderate(self, text: str) -> ModerationResult:
        resp = self.client.moderations.create(model=self.model, input=text)
        first = resp.results[0] if resp.results else None
        if first is None:
            return NOT_FLAGGED
        categories = first.categories
        if hasattr(categories, "model_dump"):
            categories = categories.model_dump()
        flagged_categories = {k: bool(v) for k, v in (categories or {}).items() if v}
        return ModerationResult(flagged=bool(first.flagged), categories=flagged_categories)
