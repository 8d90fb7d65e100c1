"""
eventrelay

Transactional outbox for reliable integration event delivery.

An integration event is written to the outbox in the same database
transaction as the state change that produced it. A dispatcher later
claims pending messages, publishes them to the in-process event bus and
tracks retries. Messages that cannot be delivered end up in the dead
letter queue, terminal messages are reaped by the cleanup service and the
reconciliation sweep re-drives anything that got stuck.
"""

__version__ = "0.4.0"
