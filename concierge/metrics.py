"""Prometheus metrics."""

from prometheus_client import Counter, Histogram

api_requests_total = Counter('api_requests_total', 'Total API requests', ['method', 'endpoint', 'status'])
api_request_duration = Histogram('api_request_duration_seconds', 'API request duration')
calls_initiated = Counter('calls_initiated_total', 'Total outbound calls initiated', ['kind'])
call_results_total = Counter('call_results_total', 'Outbound call results', ['kind', 'status'])
webhooks_received = Counter('vapi_webhooks_received_total', 'Voice vendor webhooks received', ['type'])
notifications_sent = Counter('notifications_sent_total', 'User notifications sent', ['method'])
bookings_completed = Counter('bookings_completed_total', 'Booking calls finished', ['confirmed'])
