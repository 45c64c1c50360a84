"""Task coordinator for file-based CLI agent execution.

Why a directory queue and not Celery / RQ / a SQLite table?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Agents, executors and the coordinator are separate processes that may crash
independently, and operators inspect the queue with ``ls`` and ``cat``.
A record per task living in exactly one of ``pending/``, ``processing/`` or
``completed/`` gives:

- atomic state transitions via a single ``rename`` between areas;
- crash recovery that needs nothing beyond listing ``processing/``;
- zero operational dependencies on a single machine.

The coordinator's in-memory worker slots are only a cache over that layout
and are rebuilt from disk on every start.
"""
