"""Resilient execution of bd store commands.

Why not just ``subprocess.run`` with a retry decorator?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The bd store is a file-backed CLI that corrupts its state under interleaved
writes and has a handful of well-known failure signatures. Correct handling
needs pieces a generic retry helper does not provide:

- Per-repository FIFO serialization inside this process plus a durable lock
  directory shared with other processes, with dead-owner eviction.
- Signature-driven recovery: re-importing a stale index, falling back to the
  bypass (no-db) read path after an engine panic, and dropping flags an older
  binary rejects.
- Retry budgets that depend on whether repeating a command is safe.
- Read-path suppression that serves the last good result while contention lasts,
  with a hard expiry into an explicit degraded error.
"""
