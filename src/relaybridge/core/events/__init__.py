"""Session event log: envelopes, bounded replay buffer, and live fan-out."""

from relaybridge.core.events.envelope import Envelope, EventKind, iter_envelopes, iter_records
from relaybridge.core.events.log import EventLog, EvictionPolicy, Subscriber

__all__ = [
    "Envelope",
    "EventKind",
    "EventLog",
    "EvictionPolicy",
    "Subscriber",
    "iter_envelopes",
    "iter_records",
]
