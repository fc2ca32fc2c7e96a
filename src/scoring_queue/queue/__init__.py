"""Durable job queue with a compare-and-swap claim protocol.

Why not Celery / RQ / Dramatiq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Jobs here are rows in the same SQLite database as the records they score,
and batch progress is written in the same transaction as each record
outcome. A broker would split that state across two stores and still need
the scope-uniqueness rule, resumable snapshots and cooperative cancellation
implemented as custom task logic. The claim is one conditional UPDATE on
``status = 'pending'``, which is all the coordination several workers need.
"""
