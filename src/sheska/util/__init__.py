"""
Utility functions and helpers for Sheska.

- **logger.py**: Centralized logging configuration with colored console output,
  rotating file handlers, and per-session log aggregation. Suppresses noise from
  Discord, httpx and aiosqlite internals. Also provides the process-wide
  exception hooks installed by ``main``.
"""
