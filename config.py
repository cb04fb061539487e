"""
Runtime configuration for the Smart Irrigation API.

All values are read once from the environment (a local .env file is loaded
first) and exposed as module-level constants.
"""

import os
from typing import List

from dotenv import load_dotenv

load_dotenv()

# --- Document store ---

MONGODB_URI: str = os.getenv("MONGODB_URI", "mongodb://localhost:27017/smart-irrigation")
MONGODB_DEFAULT_DB: str = "smart-irrigation"
# Upper bound for the single connection attempt made at startup
MONGODB_TIMEOUT_MS: int = int(os.getenv("MONGODB_TIMEOUT_MS", "2000"))
USE_IN_MEMORY_STORE: bool = os.getenv("USE_IN_MEMORY_STORE", "false").lower() == "true"

# --- Auth ---

INSECURE_JWT_SECRET = "your-secret-key-change-in-production"
JWT_SECRET: str = os.getenv("JWT_SECRET") or INSECURE_JWT_SECRET
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS: int = int(os.getenv("JWT_EXPIRE_DAYS", "7"))
BCRYPT_ROUNDS = 10

# --- HTTP server ---

HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "4000"))

_CORS_ALLOWED_ORIGINS_STR: str = os.getenv(
    "CORS_ALLOWED_ORIGINS", "http://localhost:3000,https://localhost:3000"
)
CORS_ALLOWED_ORIGINS: List[str] = [
    origin.strip()
    for origin in [os.getenv("FRONTEND_URL", "")] + _CORS_ALLOWED_ORIGINS_STR.split(",")
    if origin.strip()
]

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
