"""
OTP gate configuration. Values come from the environment; nothing secret lives here.
"""
import os

# OTP shape and lifetime. Fixed: 6 digits, valid for 5 minutes from issuance
OTP_LENGTH = 6
OTP_TTL_SECONDS = 300

# Human-readable lifetime echoed in the login response
OTP_EXPIRES_IN_LABEL = f"{OTP_TTL_SECONDS // 60} minutes"

# SQLite for development; tests override with sqlite:///:memory:
DATABASE_URL = os.environ.get("OTP_GATE_DATABASE_URL", "sqlite:///./otp_gate.db")

# Session persistence backend: "sql" (DATABASE_URL) or "memory" (single process only)
SESSION_BACKEND = os.environ.get("OTP_GATE_SESSION_BACKEND", "sql").strip().lower()

# Sliding session lifetime (seconds since last access). Default 30 minutes
SESSION_TTL_SECONDS = int(os.environ.get("OTP_GATE_SESSION_TTL_SECONDS", "1800"))

# Cookie carrying the session id
SESSION_COOKIE_NAME = os.environ.get("OTP_GATE_SESSION_COOKIE_NAME", "SESSION")
SESSION_COOKIE_SECURE = os.environ.get("OTP_GATE_SESSION_COOKIE_SECURE", "false").lower() in ("1", "true", "yes")

LOG_LEVEL = os.environ.get("OTP_GATE_LOG_LEVEL", "INFO").upper()
