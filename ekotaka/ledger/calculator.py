"""EkoToken reward calculation for paid pickups."""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

# Token multiplier per kg by plastic category
CATEGORY_MULTIPLIERS = {
    "PET": 1.2,
    "HDPE": 1.1,
    "LDPE": 0.9,
    "PP": 1.0,
    "PS": 0.9,
    "Other": 0.8,
}

BASE_TOKENS_PER_KG = 1.0

# (threshold, multiplier), highest first
CONFIDENCE_BONUSES = [(0.95, 1.2), (0.90, 1.1)]

AFTER_PHOTO_BONUS = 5
ACCURACY_BONUS = 10
ACCURACY_TOLERANCE = 0.05
MANUAL_REVIEW_BONUS_RATE = 0.05


@dataclass(frozen=True)
class Milestone:
    key: str
    threshold: int
    tokens: int
    description: str


MILESTONES = [
    Milestone("first_pickup", 1, 50, "First Pickup - Welcome Bonus!"),
    Milestone("ten_pickups", 10, 100, "10 Paid Pickups - Great Progress!"),
    Milestone("fifty_pickups", 50, 500, "50 Paid Pickups - Amazing Dedication!"),
    Milestone("hundred_pickups", 100, 1000, "100 Paid Pickups - Elite Collector!"),
]


@dataclass
class TokenCalculation:
    base_tokens: float
    confidence_bonus: float = 0.0
    after_photo_bonus: int = 0
    accuracy_bonus: int = 0
    manual_review_bonus: float = 0.0
    total_tokens: int = 0
    breakdown: list[str] = field(default_factory=list)


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_pickup_tokens(
    category: str,
    estimated_weight: float,
    actual_weight: Optional[float] = None,
    ai_confidence: Optional[float] = None,
    has_after_photo: bool = False,
    manually_reviewed: bool = False,
) -> TokenCalculation:
    """
    Tokens earned for one paid pickup.

    The base is the verified weight (estimate when unverified) times the
    category multiplier. A confident AI classification scales the base,
    then flat bonuses apply, and a manual review adds 5% of the running
    total. The result is rounded half-up to whole tokens.
    """
    weight = actual_weight if actual_weight is not None else estimated_weight
    multiplier = CATEGORY_MULTIPLIERS.get(category, CATEGORY_MULTIPLIERS["Other"])
    base = weight * BASE_TOKENS_PER_KG * multiplier
    calc = TokenCalculation(base_tokens=base)
    calc.breakdown.append(
        f"{weight:.1f}kg x {BASE_TOKENS_PER_KG} x {multiplier:.1f} = {base:.1f} base tokens"
    )

    total = base
    if ai_confidence is not None:
        for threshold, bonus_multiplier in CONFIDENCE_BONUSES:
            if ai_confidence >= threshold:
                calc.confidence_bonus = base * (bonus_multiplier - 1)
                total = base * bonus_multiplier
                calc.breakdown.append(
                    f"AI confidence {ai_confidence * 100:.0f}%: +{calc.confidence_bonus:.1f} tokens"
                )
                break

    if has_after_photo:
        calc.after_photo_bonus = AFTER_PHOTO_BONUS
        total += AFTER_PHOTO_BONUS
        calc.breakdown.append(f"After photo provided: +{AFTER_PHOTO_BONUS} tokens")

    if actual_weight is not None and estimated_weight > 0:
        difference = abs(actual_weight - estimated_weight) / estimated_weight
        if difference <= ACCURACY_TOLERANCE:
            calc.accuracy_bonus = ACCURACY_BONUS
            total += ACCURACY_BONUS
            calc.breakdown.append(f"Accurate weight estimate: +{ACCURACY_BONUS} tokens")

    if manually_reviewed:
        calc.manual_review_bonus = total * MANUAL_REVIEW_BONUS_RATE
        total += calc.manual_review_bonus
        calc.breakdown.append(f"Manual review verified: +{calc.manual_review_bonus:.1f} tokens")

    calc.total_tokens = round_half_up(total)
    return calc


def milestones_reached(paid_pickup_count: int) -> list[Milestone]:
    """Milestones earned exactly at this paid-pickup count."""
    return [m for m in MILESTONES if m.threshold == paid_pickup_count]


def next_milestone(paid_pickup_count: int) -> Optional[dict]:
    for m in sorted(MILESTONES, key=lambda m: m.threshold):
        if paid_pickup_count < m.threshold:
            return {
                "milestone": m.key,
                "tokens": m.tokens,
                "description": m.description,
                "progress": round(paid_pickup_count / m.threshold * 100, 1),
                "current": paid_pickup_count,
                "target": m.threshold,
            }
    return None
