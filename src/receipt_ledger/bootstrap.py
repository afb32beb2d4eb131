from __future__ import annotations

import receipt_ledger.models  # noqa: F401
from receipt_ledger.core.config import settings
from receipt_ledger.core.db import Database
from receipt_ledger.core.models import Base


def bootstrap(database: Database) -> None:
    if settings.environment == "dev" and database.url.startswith("sqlite"):
        Base.metadata.create_all(database.engine)
