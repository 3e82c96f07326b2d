"""Pickup submission: validation, photo upload, AI cross-check and record creation.

One request carries the photos and every field. The Pickup row and its first
history event commit together; if that commit fails the photos uploaded for
it are deleted again, so no blob outlives a failed submission.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka import metrics
from ekotaka.ai.classifier import (
    ClassificationHint,
    ClassificationResult,
    PlasticClassifier,
    needs_manual_review,
    prefill_block,
    validate_image,
)
from ekotaka.analytics.stats import refresh_after_change
from ekotaka.config import settings
from ekotaka.db.models import Pickup, PickupStatus, PickupStatusEvent, utcnow
from ekotaka.errors import FieldError, ValidationError
from ekotaka.lifecycle.pickups import load_pickup, validate_pickup_fields, verify_pickup
from ekotaka.logging_config import get_logger
from ekotaka.maps.geo import valid_coordinates
from ekotaka.maps.geocoding import Geocoder
from ekotaka.maps.hotspots import update_from_pickup
from ekotaka.pipeline.storage import BlobStorage, delete_quietly

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 1000


@dataclass
class PhotoUpload:
    data: bytes
    filename: str
    content_type: Optional[str] = None


@dataclass
class SubmissionRequest:
    """Raw multipart fields, exactly as the client sent them."""

    collector_id: str
    before_photo: Optional[PhotoUpload] = None
    after_photo: Optional[PhotoUpload] = None
    category: Optional[str] = None
    weight: Optional[str] = None
    address: Optional[str] = None
    coordinates: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class ValidatedSubmission:
    collector_id: str
    before_photo: PhotoUpload
    before_mime: str
    after_photo: Optional[PhotoUpload]
    after_mime: Optional[str]
    category: str
    weight: Decimal
    address: str
    coordinates: Optional[list[float]]
    notes: Optional[str]


@dataclass
class SubmissionResult:
    pickup: Pickup
    classification: ClassificationResult
    manual_review: bool
    category_match: bool
    weight_difference: float
    hotspot_id: Optional[str] = None

    @property
    def message(self) -> str:
        if self.pickup.status == PickupStatus.VERIFIED.value:
            return "Pickup verified and submitted successfully! AI analysis confirmed your submission."
        if self.manual_review:
            return "Pickup submitted! AI detected some discrepancies. It will be reviewed manually."
        return "Pickup submitted successfully! It will be verified shortly."


def parse_coordinates(raw: Optional[str]) -> tuple[Optional[list[float]], Optional[FieldError]]:
    """Parse a JSON ``[lng, lat]`` form value."""
    if raw is None or not str(raw).strip():
        return None, None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None, FieldError("coordinates", "Coordinates must be a JSON array [lng, lat]")
    if not valid_coordinates(value):
        return None, FieldError("coordinates", "Coordinates must be [lng, lat] within world bounds")
    return [float(value[0]), float(value[1])], None


def validate_submission(request: SubmissionRequest) -> ValidatedSubmission:
    """
    Re-check every field server-side.

    Raises:
        ValidationError: With one entry per failing field
    """
    errors: list[FieldError] = []

    before_mime = after_mime = None
    if request.before_photo is None or not request.before_photo.data:
        errors.append(FieldError("beforePhoto", "Before photo is required"))
    else:
        try:
            before_mime = validate_image(request.before_photo.data, "beforePhoto")
        except ValidationError as e:
            errors.extend(e.errors)

    after_photo = request.after_photo if request.after_photo and request.after_photo.data else None
    if after_photo is not None:
        try:
            after_mime = validate_image(after_photo.data, "afterPhoto")
        except ValidationError as e:
            errors.extend(e.errors)

    field_errors, weight = validate_pickup_fields(
        request.category, request.weight, request.address or ""
    )
    errors.extend(field_errors)

    coordinates, coordinate_error = parse_coordinates(request.coordinates)
    if coordinate_error:
        errors.append(coordinate_error)

    notes = (request.notes or "").strip() or None
    if notes and len(notes) > MAX_NOTES_LENGTH:
        errors.append(FieldError("notes", f"Notes cannot exceed {MAX_NOTES_LENGTH} characters"))

    if errors:
        raise ValidationError(errors)

    return ValidatedSubmission(
        collector_id=request.collector_id,
        before_photo=request.before_photo,
        before_mime=before_mime,
        after_photo=after_photo,
        after_mime=after_mime,
        category=request.category,
        weight=weight,
        address=request.address.strip(),
        coordinates=coordinates,
        notes=notes,
    )


class SubmissionPipeline:
    """Turns a validated submission into a persisted pending Pickup."""

    def __init__(self, storage: BlobStorage, classifier: PlasticClassifier, geocoder: Geocoder):
        self.storage = storage
        self.classifier = classifier
        self.geocoder = geocoder

    async def _resolve_location(self, submission: ValidatedSubmission) -> dict[str, Any]:
        if submission.coordinates:
            return {"coordinates": submission.coordinates, "address": submission.address}

        found = await self.geocoder.forward(submission.address)
        if found:
            return {"coordinates": found["coordinates"], "address": submission.address}

        logger.info(f"Using default coordinates for address '{submission.address[:80]}'")
        return {
            "coordinates": [settings.default_longitude, settings.default_latitude],
            "address": submission.address,
        }

    async def _upload_photos(self, submission: ValidatedSubmission, folder: str) -> dict[str, Any]:
        photos: dict[str, Any] = {"before": None, "after": None}
        uploads = [("before", submission.before_photo, submission.before_mime)]
        if submission.after_photo is not None:
            uploads.append(("after", submission.after_photo, submission.after_mime))

        for kind, photo, mime in uploads:
            try:
                photos[kind] = await self.storage.upload(
                    photo.data, f"{folder}/{kind}", photo.filename or f"{kind}.jpg", mime
                )
            except Exception:
                metrics.photo_uploads_total.labels(kind=kind, status="failed").inc()
                for uploaded in photos.values():
                    if uploaded:
                        await delete_quietly(self.storage, uploaded["id"])
                raise
            metrics.photo_uploads_total.labels(kind=kind, status="success").inc()
        return photos

    async def submit(self, db: AsyncSession, request: SubmissionRequest) -> SubmissionResult:
        try:
            submission = validate_submission(request)
        except ValidationError:
            metrics.pickups_submitted_total.labels(outcome="invalid").inc()
            raise

        log = get_logger(__name__, collector_id=submission.collector_id)
        now = utcnow()
        folder = f"{settings.pickup_photo_folder}/{submission.collector_id}/{now:%Y%m%d%H%M%S%f}"

        location = await self._resolve_location(submission)
        photos = await self._upload_photos(submission, folder)

        weight = float(submission.weight)
        classification = await self.classifier.classify(
            submission.before_photo.data,
            submission.before_mime,
            ClassificationHint(category=submission.category, weight=weight),
            field_name="beforePhoto",
        )
        manual_review = needs_manual_review(classification, submission.category, weight)
        category_match = classification.detected_category == submission.category
        weight_difference = (
            abs(classification.estimated_weight - weight) / weight if weight else 0.0
        )

        pickup = Pickup(
            collector_id=submission.collector_id,
            category=submission.category,
            estimated_weight=submission.weight,
            committed_weight=Decimal("0"),
            status=PickupStatus.PENDING.value,
            location=location,
            longitude=location["coordinates"][0],
            latitude=location["coordinates"][1],
            photos=photos,
            verification={
                "aiConfidence": classification.confidence,
                "aiCategory": classification.detected_category,
                "aiWeight": classification.estimated_weight,
                "manualReview": manual_review,
                "reasoning": classification.reasoning,
            },
            notes=submission.notes,
            created_at=now,
            updated_at=now,
            history=[
                PickupStatusEvent(
                    seq=1,
                    status=PickupStatus.PENDING.value,
                    timestamp=now,
                    notes=submission.notes or "Pickup submitted",
                    changed_by=submission.collector_id,
                )
            ],
        )
        db.add(pickup)
        try:
            await db.commit()
        except Exception:
            await db.rollback()
            metrics.pickups_submitted_total.labels(outcome="failed").inc()
            log.error("Pickup insert failed, removing uploaded photos", exc_info=True)
            for uploaded in photos.values():
                if uploaded:
                    await delete_quietly(self.storage, uploaded["id"])
            raise

        pickup_id = pickup.id
        log = log.bind(pickup_id=pickup_id)
        metrics.pickups_submitted_total.labels(outcome="created").inc()
        log.info(
            f"Pickup {pickup_id} submitted: {submission.category} {weight} kg, "
            f"AI {classification.detected_category} @ {classification.confidence:.2f}, "
            f"manual_review={manual_review}"
        )

        hotspot_id = None
        try:
            hotspot = await update_from_pickup(db, pickup)
            hotspot_id = hotspot.id if hotspot else None
        except Exception as e:
            await db.rollback()
            log.error(f"Hotspot update failed for pickup {pickup_id}: {e}", exc_info=True)

        if (
            settings.auto_verify_enabled
            and not manual_review
            and category_match
            and classification.confidence >= settings.auto_verify_min_confidence
        ):
            await verify_pickup(
                db,
                pickup_id,
                actual_weight=submission.weight,
                verifier_id="system",
                notes="Auto-verified by AI classification",
                manual_review=False,
            )
            log.info(f"Pickup {pickup_id} auto-verified")

        await refresh_after_change(db, collector_ids=[submission.collector_id])

        return SubmissionResult(
            pickup=await load_pickup(db, pickup_id),
            classification=classification,
            manual_review=manual_review,
            category_match=category_match,
            weight_difference=round(weight_difference, 2),
            hotspot_id=hotspot_id,
        )


async def detect(
    classifier: PlasticClassifier,
    image: bytes,
    hint: Optional[ClassificationHint] = None,
) -> dict[str, Any]:
    """Classify a single photo for the submission wizard without persisting anything."""
    mime_type = validate_image(image, "image")
    result = await classifier.classify(image, mime_type, hint, field_name="image")
    return {
        "classification": result.to_dict(),
        "prefill": prefill_block(result),
    }
