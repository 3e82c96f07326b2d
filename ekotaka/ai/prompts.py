"""Centralized prompt templates for vision-model interactions."""

from typing import Optional

from pydantic import BaseModel

PLASTIC_DETECTION_SYSTEM_PROMPT = """You are an expert assistant specialised in identifying and categorising \
plastic waste, particularly in the context of waste collection in Bangladesh. You analyse photos of \
collected plastic and return precise, honest classifications."""


class PlasticDetectionPrompt(BaseModel):
    """Prompt schema for plastic classification of one photo."""

    user_category: Optional[str] = None
    user_weight: Optional[float] = None

    def to_prompt(self) -> str:
        """Convert to prompt text."""
        parts = [
            "Identify the plastic materials visible in the image and classify the batch into one of:",
            "- PET: clear bottles, beverage bottles, transparent food containers",
            "- HDPE: milk jugs, detergent bottles, opaque coloured containers",
            "- LDPE: plastic bags, shrink wrap, squeezable bottles",
            "- PP: yogurt cups, medicine bottles, bottle caps, food tubs",
            "- PS: disposable cups, foam packaging, clamshell containers",
            "- Other: mixed, composite or unidentifiable plastics",
            "",
            "Estimate the total weight in kilograms. Empty bottles weigh roughly 20-50 g each, "
            "plastic bags 5-15 g each. Use local packaging sizes.",
            "",
            "Confidence (0-1) should reflect image clarity, visible recycling codes and how "
            "distinctive the material is. If the image does not clearly show plastic waste, set "
            "detectedCategory to null and confidence below 0.5. If the image is blurry or dark, "
            "or the items are obscured, set manualReviewRequired to true. If several types are "
            "mixed, use the dominant type or Other.",
        ]

        if self.user_category or self.user_weight:
            parts.append("\nUSER PROVIDED INFORMATION:")
            if self.user_category:
                parts.append(f"- User categorized this as: {self.user_category}")
            if self.user_weight:
                parts.append(f"- User estimated weight: {self.user_weight} kg")
            parts.append(
                "Please validate the user's input against what you see in the image. If your "
                "analysis differs significantly, explain why in the reasoning field and suggest "
                "manual review if confidence is low."
            )

        parts.append(
            "\nRespond with valid JSON matching this schema, no markdown:\n"
            '{"detectedCategory": "PET" | "HDPE" | "LDPE" | "PP" | "PS" | "Other" | null, '
            '"confidence": 0.0-1.0, "estimatedWeight": number, "reasoning": string, '
            '"manualReviewRequired": boolean, '
            '"detectedItems": [{"item": string, "category": string, "confidence": 0.0-1.0}]}'
        )

        return "\n".join(parts)


