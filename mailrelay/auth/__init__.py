"""Inbound caller authentication for the poll trigger.

Callers present a bearer JWT; the actor claim must match the user id that owns the mailbox
connection being polled.
"""
