# backend/billsync/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/billsync.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///billsync.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Entity caches are bounded by entry count, query/analytics caches by age
    BILL_CACHE_SIZE = int(os.environ.get("BILL_CACHE_SIZE", "200"))
    PRODUCT_CACHE_SIZE = int(os.environ.get("PRODUCT_CACHE_SIZE", "500"))
    QUERY_CACHE_TTL_SECONDS = float(os.environ.get("QUERY_CACHE_TTL_SECONDS", "30"))
    ANALYTICS_CACHE_TTL_SECONDS = float(os.environ.get("ANALYTICS_CACHE_TTL_SECONDS", "120"))
    # 0 disables the background sweep; expired entries are still dropped on read
    CACHE_CLEANUP_INTERVAL_SECONDS = float(os.environ.get("CACHE_CLEANUP_INTERVAL_SECONDS", "300"))

    RECALC_DEBOUNCE_SECONDS = float(os.environ.get("RECALC_DEBOUNCE_SECONDS", "1.0"))

    RETRY_MAX_ATTEMPTS = int(os.environ.get("RETRY_MAX_ATTEMPTS", "3"))
    RETRY_BASE_DELAY_SECONDS = float(os.environ.get("RETRY_BASE_DELAY_SECONDS", "1.0"))
