from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

# Set env before any receipt_ledger imports (settings are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.receipt_ledger_test.db")
os.environ.setdefault("LOCAL_IMAGE_ROOT", ".tmp_images_test")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("OPENAI_BASE_URL", "https://llm.test/v1")


@pytest.fixture(autouse=True)
def database():
    import receipt_ledger.models  # noqa: F401
    from receipt_ledger.core.db import create_database
    from receipt_ledger.core.models import Base
    from receipt_ledger.worker import tasks

    image_root = Path(os.environ["LOCAL_IMAGE_ROOT"])
    if image_root.exists():
        shutil.rmtree(image_root)

    db = create_database().open()
    Base.metadata.drop_all(db.engine)
    Base.metadata.create_all(db.engine)
    tasks.use_database(db)

    yield db

    tasks.use_database(None)
    db.close()
