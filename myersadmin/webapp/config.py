# myersadmin/webapp/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "myers-admin-secret")

    # SQLite file holding every collection slot
    DATABASE_PATH = os.environ.get("MYERS_ADMIN_DATABASE", "myers_admin.db")

    # Fill empty collections with the demo data set on first start
    SEED_DEMO_DATA = os.environ.get("MYERS_ADMIN_SEED_DEMO_DATA", "1") == "1"

    PAGE_SIZE = int(os.environ.get("MYERS_ADMIN_PAGE_SIZE", "10"))
    PAGE_SIZE_CHOICES = (5, 10, 25, 50)

    LOG_LEVEL = os.environ.get("MYERS_ADMIN_LOG_LEVEL", "INFO")
