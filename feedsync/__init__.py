"""feedsync – incremental sync + dedup engine for the intelligence feed.

Polls a media-intelligence provider (Elege.AI) for mentions of the people
and channels monitored by each active activation, groups mentions that
point at the same post, merges each group into a single feed entry and
writes it only after a layered dedup check.

Per-(activation, source, key) watermarks live in SQLite so repeated
polling never re-processes old windows.  Use
``feedsync.orchestrator.SyncOrchestrator`` from a worker process, or run
``python -m feedsync.run``.
"""
