# digistore/config.py
import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./digistore.db")

STORE_NAME = os.environ.get("STORE_NAME", "IPIN MARKET")
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")
SEED_PRODUCTS = os.environ.get("SEED_PRODUCTS", "1") == "1"

# 'sql' | 'redis'
GATE_BACKEND = os.getenv("GATE_BACKEND", "sql").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))

# 'pakasir' | 'mock'
PAYMENT_BACKEND = os.getenv("PAYMENT_BACKEND", "pakasir").lower()
PAKASIR_BASE_URL = os.environ.get("PAKASIR_BASE_URL",
                                  "https://app.pakasir.com")
PAKASIR_SLUG = os.environ.get("PAKASIR_SLUG", "")
PAKASIR_API_KEY = os.environ.get("PAKASIR_API_KEY", "")

# Pterodactyl application API
PT_DOMAIN = os.environ.get("PT_DOMAIN", "")
PT_API_KEY = os.environ.get("PT_API_KEY", "")
PT_EGG_ID = int(os.environ.get("PT_EGG_ID", "15"))
PT_LOCATION_ID = int(os.environ.get("PT_LOCATION_ID", "1"))
PT_DOCKER_IMAGE = os.environ.get("PT_DOCKER_IMAGE",
                                 "ghcr.io/parkervcp/yolks:nodejs_18")
PANEL_EMAIL_DOMAIN = os.environ.get("PANEL_EMAIL_DOMAIN", "ipin.market")

# file storage (private bucket, signed URLs only)
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
STORAGE_BUCKET = os.environ.get("STORAGE_BUCKET", "digital-products")

DOWNLOAD_LINK_TTL_SECONDS = 24 * 3600
PANEL_VALIDITY_DAYS = 30

# external call timeouts (seconds)
GATEWAY_CREATE_TIMEOUT = 15.0
GATEWAY_STATUS_TIMEOUT = 10.0
PANEL_LOOKUP_TIMEOUT = 10.0
PANEL_USER_TIMEOUT = 15.0
PANEL_SERVER_TIMEOUT = 30.0
STORAGE_SIGN_TIMEOUT = 10.0

# a claim older than this with no result means the claiming worker died;
# default is twice the worst-case provisioning time
CLAIM_STALE_SECONDS = float(os.getenv(
    "CLAIM_STALE_SECONDS",
    2 * (PANEL_LOOKUP_TIMEOUT + PANEL_USER_TIMEOUT + PANEL_SERVER_TIMEOUT
         + STORAGE_SIGN_TIMEOUT),
))
