import os
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

# Presumptive expiration margin after the link's configured expiry.
GRACE_SECONDS = int(os.getenv("GRACE_SECONDS", "20"))
# Age after which an outstanding attempt is checked against Bold.
PENDING_THRESHOLD_SECONDS = int(os.getenv("PENDING_THRESHOLD_SECONDS", "60"))
# Attempts handled per sweep run.
PROCESSING_LIMIT = int(os.getenv("PROCESSING_LIMIT", "20"))
DEFAULT_LINK_EXPIRATION_SECONDS = int(
    os.getenv("DEFAULT_LINK_EXPIRATION_SECONDS", "300")
)

BOLD_API_URL = os.getenv(
    "BOLD_API_URL", "https://integrations.api.bold.co"
).rstrip("/")
BOLD_RETURN_URL = os.getenv(
    "BOLD_RETURN_URL", "http://localhost:8000/payment/success"
)
BOLD_IMAGE_URL = os.getenv("BOLD_IMAGE_URL")
BOLD_CURRENCY = os.getenv("BOLD_CURRENCY", "COP")
BOLD_TIMEOUT_SECONDS = float(os.getenv("BOLD_TIMEOUT_SECONDS", "10"))


def bold_api_key():
    return os.getenv("BOLD_API_KEY")


def cron_secret():
    return os.getenv("CRON_JOB_SECRET")


def jwt_secret():
    return os.getenv("JWT_SECRET")
