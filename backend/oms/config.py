# backend/oms/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/oms.sqlite3 unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///oms.sqlite3")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Regional sales tax in basis points (600 = 6%)
    TAX_RATE_BPS = int(os.environ.get("TAX_RATE_BPS", "600"))

    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "ORD")

    # Shared secret for marketplace webhook signatures; empty disables the check
    WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "")

    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "24"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
