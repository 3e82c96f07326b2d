"""Photo classification of plastic waste with a deterministic fallback.

The vision model only ever assists: any provider failure (no API key,
timeout, HTTP error, unparseable JSON) yields the same low-confidence
result flagged for manual review, and the caller carries on with manual
entry.
"""

import asyncio
import base64
import io
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from PIL import Image, UnidentifiedImageError

from ekotaka import metrics
from ekotaka.ai.llm_service import LLMService, llm_service
from ekotaka.ai.prompts import PLASTIC_DETECTION_SYSTEM_PROMPT, PlasticDetectionPrompt
from ekotaka.config import settings
from ekotaka.db.models import PlasticCategory
from ekotaka.errors import ExternalServiceDegraded, ValidationError

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.3

# Pillow format name -> MIME type accepted for pickup photos
ALLOWED_IMAGE_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


@dataclass(frozen=True)
class ClassificationHint:
    """User-entered values the model is asked to cross-check."""

    category: Optional[str] = None
    weight: Optional[float] = None


@dataclass
class ClassificationResult:
    detected_category: Optional[str]
    confidence: float
    estimated_weight: float
    reasoning: str
    manual_review_required: bool
    detected_items: list[dict[str, Any]] = field(default_factory=list)
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "detectedCategory": self.detected_category,
            "confidence": self.confidence,
            "estimatedWeight": self.estimated_weight,
            "reasoning": self.reasoning,
            "manualReviewRequired": self.manual_review_required,
            "detectedItems": self.detected_items,
        }


def validate_image(data: bytes, field_name: str = "photo") -> str:
    """
    Check size and sniff the real image format.

    Returns:
        The MIME type derived from the image bytes

    Raises:
        ValidationError: Empty, oversized, unreadable or unsupported image
    """
    if not data:
        raise ValidationError.single(field_name, "Image is empty")
    if len(data) > settings.max_image_bytes:
        limit_mb = settings.max_image_bytes / (1024 * 1024)
        raise ValidationError.single(field_name, f"Image exceeds {limit_mb:.0f} MB limit")

    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format
            img.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
        raise ValidationError.single(field_name, f"Unreadable image: {e}") from e

    mime_type = ALLOWED_IMAGE_FORMATS.get(image_format or "")
    if mime_type is None:
        raise ValidationError.single(
            field_name, f"Unsupported image type {image_format}; use JPEG, PNG, WEBP or GIF"
        )
    return mime_type


def fallback_result(hint: Optional[ClassificationHint], reason: str) -> ClassificationResult:
    """Safe default returned whenever the provider cannot be used."""
    return ClassificationResult(
        detected_category=None,
        confidence=FALLBACK_CONFIDENCE,
        estimated_weight=float(hint.weight) if hint and hint.weight else 0.0,
        reasoning=f"AI analysis failed: {reason}. Manual review required.",
        manual_review_required=True,
        detected_items=[],
        fallback=True,
    )


def _clamp(value: Any, low: float, high: Optional[float] = None) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return low
    if not math.isfinite(number):
        return low
    number = max(low, number)
    if high is not None:
        number = min(high, number)
    return number


def parse_classification(raw: dict[str, Any]) -> ClassificationResult:
    """Normalise a model response into a ClassificationResult."""
    category = raw.get("detectedCategory")
    if category not in PlasticCategory.values():
        category = None

    items = raw.get("detectedItems") or []
    if not isinstance(items, list):
        items = []
    detected_items = [
        {
            "item": str(item.get("item", "")),
            "category": str(item.get("category", "")),
            "confidence": _clamp(item.get("confidence"), 0.0, 1.0),
        }
        for item in items
        if isinstance(item, dict)
    ]

    weight = _clamp(raw.get("estimatedWeight"), 0.0)
    manual_review = bool(raw.get("manualReviewRequired", False))
    if weight == 0.0 and raw.get("estimatedWeight") not in (None, 0, 0.0):
        # unusable estimate, e.g. inf or a non-numeric string
        manual_review = True

    return ClassificationResult(
        detected_category=category,
        confidence=_clamp(raw.get("confidence"), 0.0, 1.0),
        estimated_weight=weight,
        reasoning=str(raw.get("reasoning") or "Analysis completed"),
        manual_review_required=manual_review,
        detected_items=detected_items,
    )


def should_prefill(result: ClassificationResult) -> bool:
    """Whether the wizard may pre-fill category and weight from the result."""
    return (
        result.detected_category is not None
        and result.confidence >= settings.prefill_min_confidence
    )


def needs_manual_review(
    result: ClassificationResult,
    user_category: Optional[str] = None,
    user_weight: Optional[float] = None,
) -> bool:
    """Whether a pickup built from this result must be reviewed by a person."""
    if result.manual_review_required:
        return True
    if result.confidence < settings.manual_review_confidence:
        return True
    if (
        user_category
        and result.detected_category
        and result.detected_category != user_category
        and result.confidence > settings.prefill_min_confidence
    ):
        return True
    if user_weight and result.estimated_weight > 0:
        difference = abs(result.estimated_weight - user_weight) / user_weight
        if difference > settings.weight_tolerance:
            return True
    return False


def prefill_block(result: ClassificationResult) -> Optional[dict[str, Any]]:
    """Fields the wizard may pre-fill, or None for manual entry."""
    if not should_prefill(result):
        return None
    return {
        "category": result.detected_category,
        "weight": round(result.estimated_weight, 2),
    }


class PlasticClassifier:
    """Classification adapter around the vision model."""

    def __init__(self, llm: LLMService):
        self.llm = llm

    async def _call_provider(
        self, image: bytes, mime_type: str, hint: Optional[ClassificationHint]
    ) -> ClassificationResult:
        prompt = PlasticDetectionPrompt(
            user_category=hint.category if hint else None,
            user_weight=hint.weight if hint else None,
        ).to_prompt()
        image_b64 = base64.b64encode(image).decode("ascii")

        try:
            raw = await asyncio.wait_for(
                self.llm.call_vision_structured(
                    prompt=prompt,
                    image_b64=image_b64,
                    mime_type=mime_type,
                    system_prompt=PLASTIC_DETECTION_SYSTEM_PROMPT,
                ),
                timeout=settings.classification_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceDegraded(
                f"classification timed out after {settings.classification_timeout_seconds}s"
            ) from e
        except Exception as e:
            raise ExternalServiceDegraded(str(e) or type(e).__name__) from e

        return parse_classification(raw)

    async def classify(
        self,
        image: bytes,
        mime_type: Optional[str] = None,
        hint: Optional[ClassificationHint] = None,
        field_name: str = "photo",
    ) -> ClassificationResult:
        """
        Classify a photo of plastic waste.

        Args:
            image: Raw image bytes
            mime_type: Declared MIME type; the sniffed type wins
            hint: Optional user category/weight for the model to cross-check
            field_name: Form field reported in validation errors

        Returns:
            ClassificationResult; provider failures return the fallback

        Raises:
            ValidationError: The image itself is unacceptable
        """
        sniffed = validate_image(image, field_name)
        if mime_type and mime_type != sniffed:
            logger.debug(f"Declared MIME {mime_type} differs from sniffed {sniffed}; using sniffed")

        start = time.monotonic()
        try:
            result = await self._call_provider(image, sniffed, hint)
        except ExternalServiceDegraded as e:
            metrics.classification_requests_total.labels(outcome="fallback").inc()
            metrics.record_external_failure("vision", e.__cause__ or e)
            logger.warning(f"Classification degraded, returning fallback: {e}")
            return fallback_result(hint, str(e))
        finally:
            metrics.classification_duration_seconds.observe(time.monotonic() - start)

        metrics.classification_requests_total.labels(outcome="success").inc()
        metrics.classification_confidence.observe(result.confidence)
        logger.info(
            f"Classified photo as {result.detected_category} "
            f"(confidence={result.confidence:.2f}, weight={result.estimated_weight:.2f}kg)"
        )
        return result


# Global classifier instance
classifier = PlasticClassifier(llm_service)
