"""Global configuration for the EVS balance bot."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Discord
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")

# Comma-separated Discord user ids; empty = anyone may use the bot
ALLOWED_USER_IDS = [
    int(uid.strip())
    for uid in os.getenv("ALLOWED_USER_IDS", "").split(",")
    if uid.strip().isdigit() and int(uid.strip()) > 0
]

# EVS portal
EVS_ENCRYPTION_KEY = os.getenv("EVS_ENCRYPTION_KEY")
EVS_METER_DISPLAYNAME = os.getenv("EVS_METER_DISPLAYNAME") or None
EVS_DEBUG = os.getenv("EVS_DEBUG") == "1"
BOT_DEBUG = os.getenv("BOT_DEBUG") == "1"

# Encrypted credential / usage store
DATA_DIR = Path(os.getenv("DATA_DIR", "."))
EVS_STORAGE_ON_DECRYPT_FAILURE = os.getenv("EVS_STORAGE_ON_DECRYPT_FAILURE", "quarantine")

# Daily refresh / reminder job (wall-clock time)
REMINDER_HOUR = int(os.getenv("REMINDER_HOUR", "9"))
REMINDER_MINUTE = int(os.getenv("REMINDER_MINUTE", "0"))
REMINDER_TIMEZONE = os.getenv("REMINDER_TIMEZONE", "Asia/Singapore")

# Logging
LOG_DIR = Path(os.getenv("LOCALAPPDATA", ".")) / "evs-bot" / "logs"
LOG_DIR.mkdir(parents=True, exist_ok=True)
