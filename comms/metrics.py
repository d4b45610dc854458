"""Prometheus counters for chat and call traffic (exported on ``/metrics``)."""
from prometheus_client import Counter

chat_messages_sent = Counter(
    'chat_messages_sent_total',
    'Chat messages persisted and fanned out.',
    ['sender'],
)

chat_delivery_gaps = Counter(
    'chat_delivery_gaps_total',
    'Chat broadcasts that found no live member in the target room.',
    ['event'],
)

call_sessions_ended = Counter(
    'call_sessions_total',
    'Call sessions that reached the ended state.',
    ['outcome'],
)

signaling_rejections = Counter(
    'signaling_rejections_total',
    'Signalling events dropped as out-of-state or over capacity.',
    ['event'],
)
