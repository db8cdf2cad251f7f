"""arq worker settings module.

Import path for arq CLI: arq cookieledger.workers.settings.WorkerSettings
"""

from __future__ import annotations

from cookieledger.workers.lock_worker import WorkerSettings

__all__ = ["WorkerSettings"]
