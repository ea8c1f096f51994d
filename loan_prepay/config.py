import os

from dotenv import load_dotenv

load_dotenv()

API_KEY = os.getenv("API_KEY")

DEFAULT_RATE_LIMIT = os.getenv("RATE_LIMIT_DEFAULT", "60/minute")
EXPORT_RATE_LIMIT = os.getenv("RATE_LIMIT_EXPORT", "15/minute")

# Request bounds
MAX_TERM_MONTHS = int(os.getenv("MAX_TERM_MONTHS", "600"))
MAX_PRINCIPAL = float(os.getenv("MAX_PRINCIPAL", "1000000000"))
MAX_ANNUAL_RATE = float(os.getenv("MAX_ANNUAL_RATE", "50"))
MAX_SCHEDULE_ROWS = int(os.getenv("MAX_SCHEDULE_ROWS", "2000"))
MAX_EXPORT_BYTES = int(os.getenv("MAX_EXPORT_BYTES", str(6 * 1024 * 1024)))

# Defaults applied when a request leaves them out
DEFAULT_ANNUAL_RATE = float(os.getenv("DEFAULT_ANNUAL_RATE", "8.35"))
DEFAULT_TOTAL_TENURE = int(os.getenv("DEFAULT_TOTAL_TENURE", "180"))
DEFAULT_OWNER_ID = os.getenv("DEFAULT_OWNER_ID", "default")

# Engine safety caps
AMORTIZE_MAX_MONTHS = int(os.getenv("AMORTIZE_MAX_MONTHS", "1000"))
SCHEDULE_BUFFER_MONTHS = int(os.getenv("SCHEDULE_BUFFER_MONTHS", "5"))

LOAN_DB_PATH = os.getenv("LOAN_DB_PATH", "data/loan.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
