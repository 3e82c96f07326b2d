"""Prometheus metrics for the EkoTaka marketplace."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("ekotaka", "EkoTaka marketplace application info")
app_info.info({"version": "0.1.0", "name": "ekotaka-backend"})

# Submission metrics
pickups_submitted_total = Counter(
    "pickups_submitted_total",
    "Total number of pickup submissions",
    ["outcome"],
)

photo_uploads_total = Counter(
    "photo_uploads_total",
    "Total number of photo uploads to blob storage",
    ["kind", "status"],
)

orphaned_photo_cleanups_total = Counter(
    "orphaned_photo_cleanups_total",
    "Uploaded photos deleted because the pickup record was not created",
    ["status"],
)

# Classification metrics
classification_requests_total = Counter(
    "classification_requests_total",
    "Total number of classification calls",
    ["outcome"],
)

classification_duration_seconds = Histogram(
    "classification_duration_seconds",
    "Time spent waiting on the vision model",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0],
)

classification_confidence = Histogram(
    "classification_confidence",
    "Confidence reported by the vision model",
    buckets=[0.1, 0.3, 0.5, 0.6, 0.7, 0.8, 0.9, 0.95, 1.0],
)

# Lifecycle metrics
lifecycle_transitions_total = Counter(
    "lifecycle_transitions_total",
    "State machine transitions applied",
    ["entity", "from_status", "to_status"],
)

lifecycle_rejections_total = Counter(
    "lifecycle_rejections_total",
    "State machine transitions refused",
    ["entity", "requested"],
)

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["category"],
)

inventory_rejections_total = Counter(
    "inventory_rejections_total",
    "Orders refused because the pickup had too little available weight",
)

# Payment metrics
transactions_total = Counter(
    "transactions_total",
    "Payment transactions by type and final status",
    ["transaction_type", "status"],
)

# Token ledger metrics
token_entries_total = Counter(
    "token_entries_total",
    "EkoToken ledger entries appended",
    ["source"],
)

tokens_awarded_total = Counter(
    "tokens_awarded_total",
    "EkoTokens credited to collectors",
    ["source"],
)

# Messaging metrics
messages_sent_total = Counter(
    "messages_sent_total",
    "Chat messages sent",
    ["sender_role"],
)

# External services
external_call_failures_total = Counter(
    "external_call_failures_total",
    "Failed calls to external collaborators",
    ["service", "error_type"],
)

# Hotspots
hotspots_active = Gauge(
    "hotspots_active",
    "Active hotspots returned by the last map query",
)

# Encryption
decryption_failures_total = Counter(
    "decryption_failures_total",
    "Encrypted column values that could not be decrypted",
    ["exception_type"],
)


def record_transition(entity: str, from_status: str, to_status: str):
    """Record an applied state transition."""
    lifecycle_transitions_total.labels(
        entity=entity, from_status=from_status, to_status=to_status
    ).inc()


def record_rejected_transition(entity: str, requested: str):
    """Record a refused state transition."""
    lifecycle_rejections_total.labels(entity=entity, requested=requested).inc()


def record_external_failure(service: str, error: BaseException):
    """Record a failed external call."""
    external_call_failures_total.labels(
        service=service, error_type=type(error).__name__
    ).inc()


def record_decryption_failure(exception_type: str):
    """Record a decryption failure."""
    decryption_failures_total.labels(exception_type=exception_type).inc()
