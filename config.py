"""Configuration settings for the tracking bot."""
import os
import json
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "")
COC_API_KEY = os.getenv("COC_API_KEY", "")

# Fallback announcement channel when a clan has no channel configured
ANNOUNCE_CHANNEL_ID = int(os.getenv("ANNOUNCE_CHANNEL_ID", "0"))
LOG_FILE = os.getenv("LOG_FILE", "tracking_bot.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Poll intervals (seconds), one per tracking kind
WAR_POLL_INTERVAL = int(os.getenv("WAR_POLL_INTERVAL", "120"))
CWL_POLL_INTERVAL = int(os.getenv("CWL_POLL_INTERVAL", "600"))
CAPITAL_POLL_INTERVAL = int(os.getenv("CAPITAL_POLL_INTERVAL", "1800"))

# API Configuration
COC_CONCURRENCY = int(os.getenv("COC_CONCURRENCY", "6"))
COC_TIMEOUT = int(os.getenv("COC_TIMEOUT", "12"))
COC_API_BASE_URL = os.getenv("COC_API_BASE_URL", "https://api.clashofclans.com/v1")

# Support multiple API keys (JSON object of label -> key) or legacy single key
# Example env: COC_API_KEYS='{"1.2.3.4":"KEY_A","5.6.7.8":"KEY_B"}'
COC_API_KEYS: Dict[str, str] = {}
COC_API_KEYS_RAW = os.getenv("COC_API_KEYS", "")
if COC_API_KEYS_RAW:
    try:
        parsed = json.loads(COC_API_KEYS_RAW)
        if isinstance(parsed, dict):
            COC_API_KEYS = parsed
    except ValueError:
        COC_API_KEYS = {}
if not COC_API_KEYS and COC_API_KEY:
    COC_API_KEYS = {"*": COC_API_KEY}

# Reconciliation
RECONCILE_CONCURRENCY = int(os.getenv("RECONCILE_CONCURRENCY", "4"))
FETCH_TIMEOUT = float(os.getenv("FETCH_TIMEOUT", "30"))

# Cache TTLs (seconds). Kept below the poll intervals so every poll sees fresh data.
CLAN_CACHE_TTL = int(os.getenv("CLAN_CACHE_TTL", "60"))
WAR_CACHE_TTL = int(os.getenv("WAR_CACHE_TTL", "30"))
LEAGUE_CACHE_TTL = int(os.getenv("LEAGUE_CACHE_TTL", "60"))

# Storage
DATABASE_PATH = os.getenv("DATABASE_PATH", "tracking.db")
CLANS_FILE = os.getenv("CLANS_FILE", "clans.json")
LINKS_FILE = os.getenv("LINKS_FILE", "links.json")

# Raid weekends open on Friday at this UTC hour and last three days
RAID_RESET_HOUR = int(os.getenv("RAID_RESET_HOUR", "7"))
RAID_WEEKEND_DAYS = 3
RAID_HISTORY_LIMIT = int(os.getenv("RAID_HISTORY_LIMIT", "10"))

# Capital loot milestones announced once per raid weekend
CAPITAL_MILESTONES: List[int] = [50000, 100000, 250000, 500000, 1000000]

# Channel name fallbacks per notification kind
CHANNEL_NAME_FALLBACKS: Dict[str, List[str]] = {
    "war": ["war-announcements", "war-status", "war-log"],
    "cwl": ["cwl-announcements", "cwl-status", "war-announcements"],
    "capital": ["raid-weekends", "capital-status", "clan-capital"],
}

# Estimated medals per final position (1st..8th) for each CWL league
CWL_LEAGUE_MEDALS: Dict[str, List[int]] = {
    "Bronze League III": [25, 20, 16, 12, 8, 6, 4, 2],
    "Bronze League II": [35, 30, 22, 18, 14, 10, 6, 2],
    "Bronze League I": [45, 40, 30, 25, 20, 14, 8, 2],
    "Silver League III": [55, 50, 40, 30, 25, 18, 10, 2],
    "Silver League II": [70, 60, 50, 40, 30, 22, 14, 6],
    "Silver League I": [85, 75, 65, 50, 35, 25, 18, 10],
    "Gold League III": [100, 90, 75, 60, 45, 35, 25, 15],
    "Gold League II": [120, 110, 90, 75, 60, 45, 30, 20],
    "Gold League I": [140, 130, 110, 90, 75, 60, 40, 25],
    "Crystal League III": [170, 150, 135, 120, 95, 75, 55, 35],
    "Crystal League II": [190, 170, 150, 135, 110, 90, 70, 45],
    "Crystal League I": [210, 190, 170, 150, 125, 100, 80, 55],
    "Master League III": [240, 220, 200, 180, 160, 140, 120, 100],
    "Master League II": [260, 240, 220, 200, 180, 160, 140, 120],
    "Master League I": [280, 260, 240, 220, 200, 180, 160, 140],
    "Champion League III": [300, 280, 260, 240, 220, 200, 180, 160],
    "Champion League II": [320, 300, 280, 260, 240, 220, 200, 180],
    "Champion League I": [340, 320, 300, 280, 260, 240, 220, 200],
}
DEFAULT_CWL_LEAGUE = "Silver League I"

# Embed colors per tracking kind
KIND_COLORS: Dict[str, int] = {
    "war": 0xE67E22,
    "cwl": 0x9B59B6,
    "capital": 0x3498DB,
}
