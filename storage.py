"""File-based storage helpers for the clan registry and account links."""
import json
import logging
import os
from typing import Optional, Dict, Any, List

from config import LINKS_FILE, CLANS_FILE

logger = logging.getLogger(__name__)


def load_json(path: str) -> Optional[Any]:
    """Load JSON file, return None if file doesn't exist or is invalid."""
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error("[STORAGE] Error loading %s: %s", path, e)
            return None
    return None


def save_json(path: str, data: Any) -> bool:
    """Save data to JSON file. Returns True on success."""
    try:
        os.makedirs(os.path.dirname(path) if os.path.dirname(path) else ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        return True
    except OSError as e:
        logger.error("[STORAGE] Error saving %s: %s", path, e)
        return False


def normalize_tag(tag: str) -> str:
    tag = str(tag or "").strip().upper().replace("O", "0")
    if tag and not tag.startswith("#"):
        tag = "#" + tag
    return tag


# ============================
# CLAN MANAGEMENT
# ============================

def _normalize_clan(c: Dict[str, Any]) -> Dict[str, Any]:
    channels = c.get("channels") if isinstance(c.get("channels"), dict) else {}
    return {
        "name": str(c.get("name", "Unnamed")),
        "tag": normalize_tag(c.get("tag", "")),
        "guild_id": str(c.get("guild_id", "")),
        "channels": {str(k): int(v) for k, v in channels.items() if v},
    }


def load_clans(path: str = CLANS_FILE) -> List[Dict[str, Any]]:
    """
    Load the tracked clan list.

    Each clan is ``{"name", "tag", "guild_id", "channels": {kind: channel_id}}``.
    """
    data = load_json(path)
    if not isinstance(data, list):
        return []
    return [_normalize_clan(c) for c in data if isinstance(c, dict) and c.get("tag")]


def save_clans(clans: List[Dict[str, Any]], path: str = CLANS_FILE) -> bool:
    """Save clan list to file."""
    return save_json(path, clans)


def get_clan(tag: str, path: str = CLANS_FILE) -> Optional[Dict[str, Any]]:
    tag = normalize_tag(tag)
    return next((c for c in load_clans(path) if c["tag"] == tag), None)


def add_clan(name: str, tag: str, guild_id: str, path: str = CLANS_FILE) -> Dict[str, Any]:
    """Register a clan, or rename it if already tracked."""
    clans = load_clans(path)
    clan = _normalize_clan({"name": name, "tag": tag, "guild_id": guild_id})
    for existing in clans:
        if existing["tag"] == clan["tag"]:
            existing["name"] = clan["name"]
            existing["guild_id"] = clan["guild_id"]
            save_clans(clans, path)
            return existing
    clans.append(clan)
    save_clans(clans, path)
    return clan


def remove_clan(tag: str, path: str = CLANS_FILE) -> bool:
    tag = normalize_tag(tag)
    clans = load_clans(path)
    remaining = [c for c in clans if c["tag"] != tag]
    if len(remaining) == len(clans):
        return False
    return save_clans(remaining, path)


def set_clan_channel(tag: str, kind: str, channel_id: int, path: str = CLANS_FILE) -> bool:
    """Route one notification kind of a clan to a specific channel."""
    tag = normalize_tag(tag)
    clans = load_clans(path)
    for clan in clans:
        if clan["tag"] == tag:
            clan["channels"][kind] = int(channel_id)
            return save_clans(clans, path)
    return False


# ============================
# LINK MANAGEMENT
# ============================

def load_links(path: str = LINKS_FILE) -> Dict[str, str]:
    """Load Clash tag -> Discord user id links."""
    return load_json(path) or {}


def save_links(links: Dict[str, str], path: str = LINKS_FILE) -> bool:
    return save_json(path, links)


def link_user(tag: str, user_id: int, path: str = LINKS_FILE) -> str:
    tag = normalize_tag(tag)
    links = load_links(path)
    links[tag] = str(user_id)
    save_links(links, path)
    return tag


def get_linked_tag_for_user(user_id: int, path: str = LINKS_FILE) -> Optional[str]:
    """Reverse lookup: Discord user ID -> Clash player tag."""
    links = load_links(path)
    for tag, did in links.items():
        if str(did) == str(user_id):
            return tag
    return None
