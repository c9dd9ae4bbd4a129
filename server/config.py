"""
Server settings, read from the environment (and .env via python-dotenv).
"""
import os
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", 30))

# Bidding rules
MIN_INCREMENT = Decimal(os.getenv("MIN_INCREMENT", "100"))
MIN_FIRST_BID = Decimal(os.getenv("MIN_FIRST_BID", "100"))
BID_MAX_RETRIES = int(os.getenv("BID_MAX_RETRIES", 3))

# Lifecycle sweeper
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", 60))
ENDING_SOON_WINDOW_HOURS = float(os.getenv("ENDING_SOON_WINDOW_HOURS", 24))

PORT = int(os.getenv("PORT", 8000))
