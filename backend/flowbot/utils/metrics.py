# /flowbot/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics used by the flow runtime live here.

# Flow execution
flow_events_counter = Counter('flow_events_total', 'Inbound events processed', ['outcome'])
node_executions_counter = Counter('flow_node_executions_total', 'Nodes executed', ['node_type'])
session_terminations_counter = Counter('flow_session_terminations_total', 'Sessions ended', ['reason'])

# Outbound traffic
outbound_messages_counter = Counter('outbound_messages_total', 'Messages sent to users', ['message_type', 'status'])
external_calls_counter = Counter('external_api_calls_total', 'Calls made by api nodes and button actions', ['source', 'status'])

# Infrastructure
cache_operations = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
