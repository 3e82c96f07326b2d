"""Collector pickup routes: AI detection, submission, listing and owner edits."""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.ai.classifier import ClassificationHint, PlasticClassifier
from ekotaka.api.deps import (
    get_classifier,
    get_database,
    get_geocoder,
    get_storage,
    require_collector,
)
from ekotaka.api.serializers import paginated, pickup_out
from ekotaka.auth import CollectorPrincipal
from ekotaka.db.models import Pickup, PickupStatus
from ekotaka.errors import ValidationError
from ekotaka.lifecycle.pickups import load_owned_pickup, update_pickup_details
from ekotaka.maps.geocoding import Geocoder
from ekotaka.pipeline.storage import BlobStorage
from ekotaka.pipeline.submission import PhotoUpload, SubmissionPipeline, SubmissionRequest, detect

router = APIRouter(prefix="/api/pickups", tags=["pickups"])


class PickupUpdate(BaseModel):
    category: Optional[str] = None
    estimatedWeight: Optional[float] = None
    notes: Optional[str] = None
    address: Optional[str] = None


def _hint_weight(raw: Optional[str]) -> Optional[float]:
    try:
        weight = float(raw) if raw else None
    except ValueError:
        return None
    return weight if weight and weight > 0 else None


async def _read_photo(upload: Optional[UploadFile]) -> Optional[PhotoUpload]:
    if upload is None:
        return None
    data = await upload.read()
    if not data:
        return None
    return PhotoUpload(data=data, filename=upload.filename or "photo.jpg", content_type=upload.content_type)


@router.get("")
async def list_pickups(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    collector: CollectorPrincipal = Depends(require_collector),
    db: AsyncSession = Depends(get_database),
):
    """List the caller's pickups, newest first."""
    conditions = [Pickup.collector_id == collector.user_id]
    if status and status != "all":
        if status not in {s.value for s in PickupStatus}:
            raise ValidationError.single("status", "Unknown pickup status")
        conditions.append(Pickup.status == status)

    total = await db.execute(select(func.count(Pickup.id)).where(*conditions))
    rows = await db.execute(
        select(Pickup)
        .where(*conditions)
        .order_by(Pickup.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "success": True,
        "pickups": [pickup_out(p, include_history=False) for p in rows.scalars().all()],
        "pagination": paginated(page, limit, int(total.scalar_one())),
    }


@router.post("/detect")
async def detect_plastic(
    image: UploadFile = File(...),
    category: Optional[str] = Form(None),
    weight: Optional[str] = Form(None),
    collector: CollectorPrincipal = Depends(require_collector),
    classifier: PlasticClassifier = Depends(get_classifier),
):
    """Classify a photo for the wizard; never persists anything."""
    data = await image.read()
    hint = None
    if category or weight:
        hint = ClassificationHint(category=category or None, weight=_hint_weight(weight))
    result = await detect(classifier, data, hint)
    return {"success": True, **result}


@router.post("", status_code=201)
@router.post("/create", status_code=201)
async def create_pickup(
    beforePhoto: Optional[UploadFile] = File(None),
    afterPhoto: Optional[UploadFile] = File(None),
    category: Optional[str] = Form(None),
    weight: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    coordinates: Optional[str] = Form(None),
    notes: Optional[str] = Form(None),
    collector: CollectorPrincipal = Depends(require_collector),
    db: AsyncSession = Depends(get_database),
    storage: BlobStorage = Depends(get_storage),
    classifier: PlasticClassifier = Depends(get_classifier),
    geocoder: Geocoder = Depends(get_geocoder),
):
    """Submit a pickup: photos plus fields in one multipart request."""
    request = SubmissionRequest(
        collector_id=collector.user_id,
        before_photo=await _read_photo(beforePhoto),
        after_photo=await _read_photo(afterPhoto),
        category=category,
        weight=weight,
        address=address,
        coordinates=coordinates,
        notes=notes,
    )
    result = await SubmissionPipeline(storage, classifier, geocoder).submit(db, request)
    return {
        "success": True,
        "message": result.message,
        "pickup": pickup_out(result.pickup),
        "aiAnalysis": {
            **result.classification.to_dict(),
            "categoryMatch": result.category_match,
            "weightDifference": result.weight_difference,
            "manualReview": result.manual_review,
        },
        "hotspotId": result.hotspot_id,
    }


@router.get("/{pickup_id}")
async def get_pickup(
    pickup_id: str,
    collector: CollectorPrincipal = Depends(require_collector),
    db: AsyncSession = Depends(get_database),
):
    pickup = await load_owned_pickup(db, pickup_id, collector.user_id)
    return {"success": True, "pickup": pickup_out(pickup)}


@router.put("/{pickup_id}")
async def update_pickup(
    pickup_id: str,
    changes: PickupUpdate,
    collector: CollectorPrincipal = Depends(require_collector),
    db: AsyncSession = Depends(get_database),
):
    """Owner edit while the pickup is still pending."""
    pickup = await update_pickup_details(
        db, pickup_id, collector.user_id, changes.model_dump(exclude_unset=True)
    )
    return {"success": True, "pickup": pickup_out(pickup)}
