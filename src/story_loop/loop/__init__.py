"""Iteration controller for repeated CLI agent invocations.

One project is one directory holding the story ledger (``prd.json``), the
prompt template and all persisted loop state:

- ``.call_count`` / ``.last_reset``: hourly call budget bucket.
- ``.circuit_breaker.json``: breaker state and rolling failure evidence.
- ``.last_analysis.json``: most recent response analysis.
- ``status.json``: snapshot for observers (dashboard, ``status`` command).
- ``logs/``: one log per agent attempt plus the daily controller log.

Everything runs on one thread; several projects run as separate processes.
"""
