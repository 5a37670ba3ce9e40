"""
Collections Case Assignment Engine

Tracks delinquent loan cases and routes them to collection queues using an
ordered, immutable rule policy, with optimistic concurrency on case updates
and a hash-chained audit trail of every routing decision.
"""

__version__ = "1.0.0"
