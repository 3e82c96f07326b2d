"""camelCase response shapes for ORM records."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from ekotaka.db.models import (
    BrandProfile,
    CollectorProfile,
    Conversation,
    EkoTokenTransaction,
    Message,
    Order,
    Pickup,
    Transaction,
    WasteHotspot,
)


def _num(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def pickup_out(pickup: Pickup, include_history: bool = True) -> dict[str, Any]:
    data = {
        "id": pickup.id,
        "collectorId": pickup.collector_id,
        "category": pickup.category,
        "estimatedWeight": _num(pickup.estimated_weight),
        "actualWeight": _num(pickup.actual_weight),
        "committedWeight": _num(pickup.committed_weight),
        "availableWeight": _num(pickup.available_weight),
        "status": pickup.status,
        "location": pickup.location,
        "photos": pickup.photos,
        "verification": pickup.verification,
        "notes": pickup.notes,
        "createdAt": _ts(pickup.created_at),
        "updatedAt": _ts(pickup.updated_at),
    }
    if include_history:
        data["statusHistory"] = [
            {
                "status": event.status,
                "timestamp": _ts(event.timestamp),
                "notes": event.notes,
                "changedBy": event.changed_by,
            }
            for event in pickup.history
        ]
    return data


def order_out(order: Order) -> dict[str, Any]:
    return {
        "id": order.id,
        "orderId": order.order_id,
        "brandId": order.brand_id,
        "collectorId": order.collector_id,
        "pickupId": order.pickup_id,
        "category": order.pickup.category if order.pickup is not None else None,
        "quantity": _num(order.quantity),
        "unitPrice": _num(order.unit_price),
        "totalAmount": _num(order.total_amount),
        "status": order.status,
        "orderDate": _ts(order.order_date),
        "confirmedAt": _ts(order.confirmed_at),
        "processingAt": _ts(order.processing_at),
        "shippedAt": _ts(order.shipped_at),
        "deliveredAt": _ts(order.delivered_at),
        "cancelledAt": _ts(order.cancelled_at),
        "cancellationReason": order.cancellation_reason,
        "paymentStatus": order.payment_status,
        "paymentMethod": order.payment_method,
        "transactionId": order.transaction_id,
        "shippingAddress": order.shipping_address,
        "pickupLocation": order.pickup_location,
        "notes": order.notes,
        "collectorNotes": order.collector_notes,
        "trackingNumber": order.tracking_number,
        "estimatedDeliveryDate": _ts(order.estimated_delivery_date),
        "statusHistory": [
            {
                "status": event.status,
                "timestamp": _ts(event.timestamp),
                "notes": event.notes,
                "changedBy": event.changed_by,
                "changedByRole": event.changed_by_role,
            }
            for event in order.history
        ],
    }


def transaction_out(transaction: Transaction) -> dict[str, Any]:
    return {
        "id": transaction.id,
        "transactionId": transaction.transaction_id,
        "transactionType": transaction.transaction_type,
        "collectorId": transaction.collector_id,
        "brandId": transaction.brand_id,
        "pickupId": transaction.pickup_id,
        "orderId": transaction.order_id,
        "amount": _num(transaction.amount),
        "paymentMethod": transaction.payment_method,
        "status": transaction.status,
        "initiatedAt": _ts(transaction.initiated_at),
        "completedAt": _ts(transaction.completed_at),
        "failedAt": _ts(transaction.failed_at),
        "failureReason": transaction.failure_reason,
        "metadata": transaction.transaction_metadata or {},
    }


def token_entry_out(entry: EkoTokenTransaction) -> dict[str, Any]:
    return {
        "id": entry.id,
        "amount": entry.amount,
        "type": entry.type,
        "source": entry.source,
        "pickupId": entry.pickup_id,
        "description": entry.description,
        "metadata": entry.entry_metadata or {},
        "balanceAfter": entry.balance_after,
        "createdAt": _ts(entry.created_at),
    }


def conversation_out(conversation: Conversation, role: str) -> dict[str, Any]:
    is_brand = role == "brand"
    return {
        "id": conversation.id,
        "brandId": conversation.brand_id,
        "collectorId": conversation.collector_id,
        "subject": conversation.subject,
        "relatedOrderId": conversation.related_order_id,
        "relatedPickupId": conversation.related_pickup_id,
        "lastMessage": conversation.last_message,
        "lastMessageAt": _ts(conversation.last_message_at),
        "unreadCount": conversation.unread_brand if is_brand else conversation.unread_collector,
        "archived": conversation.archived_brand if is_brand else conversation.archived_collector,
        "createdAt": _ts(conversation.created_at),
    }


def message_out(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "conversationId": message.conversation_id,
        "senderId": message.sender_id,
        "senderRole": message.sender_role,
        "content": message.content,
        "attachments": message.attachments or [],
        "readByBrand": _ts(message.read_by_brand),
        "readByCollector": _ts(message.read_by_collector),
        "createdAt": _ts(message.created_at),
    }


def hotspot_out(
    hotspot: WasteHotspot, distance_m: Optional[float] = None, collections: int = 0
) -> dict[str, Any]:
    data = {
        "id": hotspot.id,
        "location": {
            "coordinates": [hotspot.longitude, hotspot.latitude],
            "address": hotspot.address,
        },
        "status": hotspot.status,
        "estimatedAvailable": {
            "totalWeight": round(hotspot.total_weight, 2),
            "categories": hotspot.categories or {},
        },
        "reportedBy": hotspot.reported_by,
        "reporterType": hotspot.reporter_type,
        "description": hotspot.description,
        "accessInstructions": hotspot.access_instructions,
        "reportedAt": _ts(hotspot.reported_at),
        "lastUpdated": _ts(hotspot.last_updated),
        "lastCollectedAt": _ts(hotspot.last_collected_at),
        "expiresAt": _ts(hotspot.expires_at),
        "collectionCount": collections,
    }
    if distance_m is not None:
        data["distance"] = round(distance_m, 1)
    return data


def collector_profile_out(profile: CollectorProfile) -> dict[str, Any]:
    return {
        "userId": profile.user_id,
        "personalInfo": profile.personal_info,
        "preferences": profile.preferences,
        "paymentInfo": {
            # Account numbers are masked; only the owner ever sets them
            "bkashNumber": _mask(profile.bkash_number),
            "nagadNumber": _mask(profile.nagad_number),
            "accountName": profile.account_name,
        },
        "stats": profile.stats,
        "updatedAt": _ts(profile.updated_at),
    }


def brand_profile_out(profile: BrandProfile) -> dict[str, Any]:
    return {
        "userId": profile.user_id,
        "companyInfo": profile.company_info,
        "contactInfo": profile.contact_info,
        "preferences": profile.preferences,
        "billingAddress": profile.billing_address,
        "stats": profile.stats,
        "updatedAt": _ts(profile.updated_at),
    }


def _mask(number: Optional[str]) -> Optional[str]:
    if not number:
        return None
    return "*" * max(len(number) - 4, 0) + number[-4:]


def paginated(page: int, limit: int, total: int) -> dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit if limit else 0,
    }
