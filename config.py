"""
Configuration for the VeriMarket backend.
Loads settings from the environment (.env supported).
"""

import os
from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./verimarket.db")

# Identity: bearer tokens are issued by the external auth service
AUTH_CONFIG = {
    "secret_key": os.getenv("AUTH_SECRET_KEY", "verimarket-dev-secret-change-me"),
    "algorithm": os.getenv("AUTH_ALGORITHM", "HS256"),
}

# Money
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

# Verification levels above this are refused as "not yet enabled"
MAX_ENABLED_VERIFICATION_LEVEL = int(os.getenv("MAX_ENABLED_VERIFICATION_LEVEL", "3"))

# Notification collaborator
NOTIFICATION_CONFIG = {
    "webhook_url": os.getenv("NOTIFY_WEBHOOK_URL", ""),
    "timeout_seconds": float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "10")),
}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
