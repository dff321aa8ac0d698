import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ledger.db")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
ACCESS_MIN = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "720"))
ALGO = "HS256"

# Unset means open/dev mode
FAMILY_API_KEY = os.getenv("FAMILY_API_KEY") or None
DEFAULT_FAMILY_ID = os.getenv("DEFAULT_FAMILY_ID", "default")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PIN_HASH_ROUNDS = int(os.getenv("PIN_HASH_ROUNDS", "12"))
