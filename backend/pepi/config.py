# backend/pepi/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///pepi.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Tokens are issued by the external identity provider; we only verify them.
    IDENTITY_JWT_SECRET = os.environ.get("IDENTITY_JWT_SECRET", "")
    IDENTITY_JWT_ALGORITHM = os.environ.get("IDENTITY_JWT_ALGORITHM", "HS256")
    IDENTITY_JWT_AUDIENCE = os.environ.get("IDENTITY_JWT_AUDIENCE", "authenticated")

    # Email via Resend. An empty key disables delivery (failures are logged only).
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
    RESEND_API_URL = os.environ.get("RESEND_API_URL", "https://api.resend.com/emails")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "PEPI Money Tracker <no-reply@pepitracker.gov>")
    EMAIL_TIMEOUT_SECONDS = float(os.environ.get("EMAIL_TIMEOUT_SECONDS", "10"))
    # "background" hands the HTTP call to a worker thread; "sync" sends inline
    EMAIL_DELIVERY = os.environ.get("EMAIL_DELIVERY", "background")

    DASHBOARD_URL = os.environ.get("DASHBOARD_URL", "https://pepitracker.gov/dashboard")

    RESET_CONFIRMATION_PHRASE = os.environ.get("RESET_CONFIRMATION_PHRASE", "RESET PEPI BOOK")

    # Browser dashboards allowed to call the API directly (comma separated)
    CORS_ALLOWED_ORIGINS = tuple(
        origin.strip()
        for origin in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    )
