"""LLM judge used to arbitrate borderline escalations."""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from openai import AsyncOpenAI
from pydantic import BaseModel

logger = logging.getLogger(__name__)

JUDGE_SYSTEM_PROMPT = (
    "You review events from an unattended coding assistant and follow the "
    "instructions in the user message exactly. Answer concisely."
)


class JudgeRequest(BaseModel):
    """Request sent to the judge."""

    prompt_type: str = "question"
    content: str
    project: str = ""
    cwd: str = ""


class JudgeResponse(BaseModel):
    """Judge reply. ``response`` carries the model's raw answer."""

    action: str
    response: Optional[str] = None
    confidence: float = 0.0


class EscalationJudge(ABC):
    """Abstract base class for judges."""

    @abstractmethod
    async def analyze(self, request: JudgeRequest) -> JudgeResponse:
        """Analyze an event and return the judge's reply."""
        pass


class OpenAIEscalationJudge(EscalationJudge):
    """Judge backed by OpenAI chat completions."""

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-4o"):
        self.client = client
        self.model = model

    async def analyze(self, request: JudgeRequest) -> JudgeResponse:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
                {"role": "user", "content": request.content},
            ],
            max_tokens=150,
            temperature=0.2,
        )
        content = response.choices[0].message.content or ""
        logger.debug(f"[JUDGE] Raw reply for {request.project or 'unknown project'}: {content}")
        return JudgeResponse(
            action="respond",
            response=content,
            confidence=1.0 if content else 0.0,
        )
