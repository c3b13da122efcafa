"""Work-order orchestration core.

Single process, SQLite-backed. Approved work orders are picked up by a poll
loop, serialized per target by an in-memory lock manager, charged against a
shared budget ledger, routed to the cheapest capable agent and driven through
generation, apply and publish. Failures are classified and either retried on
a more capable agent or escalated with ranked resolution options.
"""
