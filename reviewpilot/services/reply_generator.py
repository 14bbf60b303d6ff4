"""
Reply draft generation

Two generators share one interface: OpenAIReplyGenerator writes drafts with
an LLM, TemplateReplyGenerator fills fixed templates and is the fallback
whenever the LLM is unconfigured or fails. Both flag sensitive topics for
escalation with the same keyword table.
"""
import re
import json
import logging
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from openai import OpenAI

from reviewpilot.core.config import get_settings
from reviewpilot.services.sentiment_classifier import Sentiment

logger = logging.getLogger(__name__)


class ReplyGenerationError(Exception):
    """Raised when a draft reply could not be produced"""
    pass


@dataclass
class ReplyRequest:
    """Everything a generator may use to write a reply"""
    platform_review_id: str
    author: Optional[str]
    rating: int
    text: str
    sentiment: Sentiment
    restaurant_name: str


@dataclass
class GeneratedReply:
    draft_text: str
    escalation_flag: bool
    escalation_reasons: List[str] = field(default_factory=list)
    confidence_score: float = 0.5
    is_fallback: bool = False


ESCALATION_KEYWORDS: Dict[str, List[str]] = {
    "health_issue": ["food poisoning", "sick", "illness", "contaminated", "hygiene", "health department"],
    "threat": ["sue", "lawsuit", "lawyer", "attorney", "police"],
    "discrimination": ["racist", "sexist", "discriminat", "prejudice"],
    "refund_request": ["refund", "money back", "chargeback", "reimburse"],
    "legal_concern": ["violation", "illegal", "law", "regulation"],
    "extreme_negativity": ["worst", "horrible", "disgusting", "never again"],
}

# Stems that should also match their longer forms (discriminated, discrimination)
_STEM_KEYWORDS = {"discriminat"}


def _keyword_pattern(keyword: str) -> str:
    if keyword in _STEM_KEYWORDS:
        return r"\b" + re.escape(keyword)
    return r"\b" + re.escape(keyword) + r"\b"


def detect_escalations(text: str) -> List[str]:
    """Return the escalation reasons whose keywords appear in the text"""
    lowered = (text or "").lower()
    return [
        reason for reason, keywords in ESCALATION_KEYWORDS.items()
        if any(re.search(_keyword_pattern(k), lowered) for k in keywords)
    ]


class ReplyGenerator(ABC):
    """Capability interface for reply drafting"""

    @abstractmethod
    def generate(self, request: ReplyRequest) -> GeneratedReply:
        """Draft a reply, raising ReplyGenerationError on failure"""


class TemplateReplyGenerator(ReplyGenerator):
    """Deterministic template drafts, used as the fallback"""

    ESCALATION_TEMPLATE = (
        "Thank you for bringing this to our attention. We take all feedback very seriously. "
        "We'd like to discuss this further, so please reach out to us directly so we can make this right."
    )

    POSITIVE_TEMPLATES = [
        "Thank you so much for the {rating}-star review! We're thrilled you enjoyed your experience at {name}. Hope to see you again soon!",
        "Wow, thank you for the kind words! The team at {name} really appreciates your {rating}-star review. Can't wait to welcome you back!",
        "Thank you for taking the time to leave us {rating} stars! We're so glad you had a great experience. See you next time!",
    ]

    NEGATIVE_TEMPLATES = [
        "Thank you for your feedback. We're sorry we didn't meet your expectations this time. We'd love to make this right, please reach out to us directly.",
        "We appreciate you sharing your experience. This isn't the standard we hold ourselves to at {name}. We'd love the chance to make it up to you.",
        "Thank you for letting us know. We're sorry about your experience and are working to improve. Please contact us directly so we can address your concerns.",
    ]

    CONFIDENCE = 0.5

    def generate(self, request: ReplyRequest) -> GeneratedReply:
        reasons = detect_escalations(request.text)
        name = request.restaurant_name or "our restaurant"

        if reasons:
            draft = self.ESCALATION_TEMPLATE
        else:
            templates = self.POSITIVE_TEMPLATES if request.sentiment == Sentiment.POSITIVE else self.NEGATIVE_TEMPLATES
            # Same review always gets the same template
            index = zlib.crc32(request.platform_review_id.encode("utf-8")) % len(templates)
            draft = templates[index].format(rating=request.rating, name=name)

        return GeneratedReply(
            draft_text=draft,
            escalation_flag=bool(reasons),
            escalation_reasons=reasons,
            confidence_score=self.CONFIDENCE,
        )


class OpenAIReplyGenerator(ReplyGenerator):
    """LLM-written drafts via the OpenAI chat completions API"""

    SYSTEM_PROMPT = (
        "You write short, warm, professional replies from a restaurant owner to public online reviews. "
        "Never admit legal liability, never offer compensation amounts, never mention the reviewer's full name. "
        "Keep replies under 80 words. Respond with a JSON object: "
        '{"reply": "<text>", "confidence": <number between 0 and 1>}.'
    )

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None):
        settings = get_settings()
        self.model = model or settings.openai_model
        if client is not None:
            self.client = client
        elif settings.openai_api_key:
            self.client = OpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.http_timeout_seconds * 3,
                max_retries=1,
            )
        else:
            logger.warning("OPENAI_API_KEY not configured - AI reply drafting disabled")
            self.client = None

    def is_enabled(self) -> bool:
        return self.client is not None

    def generate(self, request: ReplyRequest) -> GeneratedReply:
        if not self.is_enabled():
            raise ReplyGenerationError("OpenAI client is not configured")

        user_prompt = (
            f"Restaurant: {request.restaurant_name}\n"
            f"Rating: {request.rating}/5 ({request.sentiment.value})\n"
            f"Reviewer: {request.author or 'a guest'}\n"
            f"Review: {request.text or '(no text)'}"
        )

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.SYSTEM_PROMPT},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                max_tokens=300,
                temperature=0.6,
            )
            payload = json.loads(response.choices[0].message.content)
            draft = (payload.get("reply") or "").strip()
            confidence = float(payload.get("confidence", 0.8))
        except Exception as e:
            raise ReplyGenerationError(f"OpenAI reply generation failed: {e}") from e

        if not draft:
            raise ReplyGenerationError("OpenAI returned an empty reply")

        reasons = detect_escalations(request.text)
        return GeneratedReply(
            draft_text=draft,
            escalation_flag=bool(reasons),
            escalation_reasons=reasons,
            confidence_score=max(0.0, min(1.0, confidence)),
        )


def get_reply_generator() -> ReplyGenerator:
    """Primary generator for ingestion: OpenAI when configured, else templates"""
    generator = OpenAIReplyGenerator()
    if generator.is_enabled():
        return generator
    return TemplateReplyGenerator()
