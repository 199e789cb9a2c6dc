from prometheus_client import Counter

RESERVATIONS_CREATED = Counter(
    "netlab_reservations_created", "Reservations accepted by the scheduler"
)
RESERVATION_CONFLICTS = Counter(
    "netlab_reservation_conflicts", "Reservation attempts rejected for overlap"
)
WEBHOOK_OUTCOMES = Counter(
    "netlab_payment_webhooks", "Payment webhook deliveries by outcome", ["outcome"]
)
RESERVATIONS_REAPED = Counter(
    "netlab_reservations_reaped", "Pending reservations cancelled by the reaper"
)
RUNTIME_FAILURES = Counter(
    "netlab_runtime_failures", "Failed lab runtime actions", ["action"]
)
