"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Module reloads in tests would otherwise raise "Duplicated timeseries"
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook ingestion
webhook_events_counter = _counter(
    'paycore_webhook_events_total',
    'Processor events received, by normalized kind and outcome',
    ['kind', 'outcome']
)

webhook_auth_failures_counter = _counter(
    'paycore_webhook_auth_failures_total',
    'Webhook requests rejected before processing',
    ['reason']
)

# Ledger
ledger_mutations_counter = _counter(
    'paycore_ledger_mutations_total',
    'Ledger effect log entries written',
    ['bucket', 'reason']
)

ledger_underflow_counter = _counter(
    'paycore_ledger_underflow_total',
    'Reversals that took a creator balance below zero'
)

# Anomaly queue
anomalies_counter = _counter(
    'paycore_anomalies_total',
    'Anomalies recorded for operator follow-up',
    ['error_type']
)

anomaly_replays_counter = _counter(
    'paycore_anomaly_replays_total',
    'Anomaly replay attempts',
    ['status']
)

# Notifications
notification_failures_counter = _counter(
    'paycore_notification_failures_total',
    'Notifications dropped after a publish failure or timeout',
    ['notification_type']
)
