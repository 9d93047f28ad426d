"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Module reloads (tests, uvicorn --reload) would otherwise raise on duplicate registration
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


stripe_events_counter = _counter(
    'formpay_stripe_events_total',
    'Stripe webhook events by processing outcome',
    ['outcome']
)

payments_recorded_counter = _counter(
    'formpay_payments_recorded_total',
    'Ledger writes by result',
    ['result']
)

form_submissions_counter = _counter(
    'formpay_form_submissions_total',
    'Form submission writes by result',
    ['result']
)

crm_notifications_counter = _counter(
    'formpay_crm_notifications_total',
    'CRM notification deliveries by status',
    ['status']
)
