"""Configuration loader."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / ".env")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
DATABASE_URL = os.getenv("DATABASE_URL", "none").strip()

# Scheduling
VALUATION_JOB = "update_meme_valuation"
VALUATION_INTERVAL_SECONDS = int(os.getenv("VALUATION_INTERVAL_SECONDS", "3600"))

# Engagement source: "reddit" | "simulated" | "none"
ENGAGEMENT_SOURCE = os.getenv("ENGAGEMENT_SOURCE", "reddit").lower()
REDDIT_USER_AGENT = os.getenv("REDDIT_USER_AGENT", "meme-market/0.1")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))

# Issuance
TOTAL_SHARES = 1000
FOUNDER_SHARE_PCT = 0.10
INITIAL_ENGAGEMENT_SCORE = 10.0

# Valuation
MIN_PRICE = 0.1
MIN_ENGAGEMENT_SCORE = 10.0
MAX_TICK_CHANGE = 0.3
VOLATILITY_DECAY_PER_DAY = 0.1
MIN_VOLATILITY = 0.1
VOLUME_SCALE = 1000.0
MAX_VOLUME_FACTOR = 2.0
PRICE_HISTORY_LIMIT = 24

ENGAGEMENT_WEIGHTS = {
    "score": 0.5,
    "comments": 2.0,
    "trade_volume": 3.0,
}

CATEGORIES = ["reaction", "gaming", "politics", "movies", "animals", "tech", "sports"]
