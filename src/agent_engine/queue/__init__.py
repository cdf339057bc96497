"""Durable task queue: store, lease protocol and poll scheduler.

Several worker processes may poll the same database. They never talk to
each other; a task belongs to whichever process's conditional UPDATE moved
it to `active`, and it stays theirs only while they keep `updated_at`
fresh. A crashed process simply stops heartbeating, and its tasks become
claimable again once the stale threshold passes.
"""
