"""EVS domain configuration - portal endpoints, claims, thresholds."""

# --- Modern JSON API (claim-based RPC) ---
LOGIN_URL = "https://evs2u.evs.com.sg/login"
METER_CREDIT_ENDPOINT = "https://ore.evs.com.sg/evs1/get_credit_bal"
MONEY_BALANCE_ENDPOINT = "https://ore.evs.com.sg/tcm/get_credit_balance"
METER_INFO_ENDPOINT = "https://ore.evs.com.sg/cp/get_meter_info"
HISTORY_ENDPOINT = "https://ore.evs.com.sg/get_history"
RECENT_USAGE_STAT_ENDPOINT = "https://ore.evs.com.sg/cp/get_recent_usage_stat"
MONTH_TO_DATE_USAGE_ENDPOINT = "https://ore.evs.com.sg/get_month_to_date_usage"

# Customer portal origin, sent on list-scope calls
PORTAL_URL = "https://cp2nus.evs.com.sg/"
PORTAL_ORIGIN = "https://cp2nus.evs.com.sg"

LOGIN_DEST_PORTAL = "evs2cp"
LOGIN_PLATFORM = "web"
CLAIM_SVC_NAME = "oresvc"
CLAIM_SCOPE = "self"

# Claim targets. "read" on the balance / info targets is reliably authorized;
# "list" on readings is an account-tier permission and may return 403.
TARGET_CREDIT_BALANCE = "meter_p_credit_balance"
TARGET_METER_INFO = "meter_p_info"
TARGET_METER_READING = "meter_p_reading"
TARGET_READING_LIST = "meter.reading"
OPERATION_READ = "read"
OPERATION_LIST = "list"

# --- Legacy HTML-form portal ---
LEGACY_BASE = "https://nus-utown.evs.com.sg"
LEGACY_LOGIN_URL = f"{LEGACY_BASE}/EVSEntApp-war/loginServlet"
LEGACY_METER_CREDIT_URL = f"{LEGACY_BASE}/EVSEntApp-war/viewMeterCreditServlet"
LEGACY_LOGOUT_URL = f"{LEGACY_BASE}/EVSEntApp-war/logoutServlet"
LEGACY_ENDPOINT_LABEL = "legacy-portal"

# --- HTTP ---
REQUEST_TIMEOUT = 20.0  # seconds, per call
SLOW_REQUEST_MS = 2000

# --- Response validation ---
# `info` values that mean "no data" rather than a warning
SAFE_INFO_MESSAGES = frozenset({
    "empty tariff",
    "empty result",
    "credit balance not found",
    "no data",
    "no history",
    "no reading",
    "no record",
    "no records",
    "not found",
})

# Errors that mean the modern API will never serve this account
LEGACY_FALLBACK_PHRASES = (
    "user is disabled",
    "account disabled",
    "not authorized",
)

# --- Usage history ---
USAGE_LOOK_BACK_HOURS = 168
HISTORY_MAX_RECORDS = 400
DEFAULT_RANK_VAL = 0.5

# --- Balance reconciliation ---
# Real balances are expected to sit below this; a larger value on one of the
# two endpoints is usually stale.
SUSPECT_BALANCE_THRESHOLD = 100.0

# --- Daily refresh / alerts ---
USAGE_REFRESH_DAYS = 7
USAGE_RETENTION_DAYS = 90
AVERAGE_WINDOW_DAYS = 7
CRITICAL_BALANCE = 2.00
LOW_BALANCE = 5.00
DAYS_LEFT_FLOOR = 2.0

# --- Storage ---
STORAGE_FILENAME = ".evs-storage.enc"
STORAGE_SALT = b"evs-bot-salt-v1"
MIN_SECRET_LENGTH = 16

# --- Chat ---
MAX_USAGE_DAYS = 60
DEFAULT_USAGE_DAYS = 7
MAX_LISTED_DAYS = 14
