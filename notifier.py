"""Delivery of tracking events to Discord channels."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import discord

from config import ANNOUNCE_CHANNEL_ID, CHANNEL_NAME_FALLBACKS
from embeds import build_event_embed
from models import Event, TrackingKind, TrackingRecord

logger = logging.getLogger(__name__)


@dataclass
class EventContext:
    """What a notifier needs besides the event itself to render and route it."""
    clan_tag: str
    clan_name: str
    guild_id: str
    kind: TrackingKind
    opponent_name: Optional[str] = None
    channels: Dict[str, int] = field(default_factory=dict)
    record: Optional[TrackingRecord] = None


def resolve_channel(channels: Dict[str, int], kind: str, guild: Any) -> Optional[Any]:
    """
    Pick the channel for a notification kind.

    A channel configured for the clan wins; otherwise the first guild text
    channel whose name is in the fallback list for the kind. None if neither.
    """
    if guild is None:
        return None
    channel_id = (channels or {}).get(kind)
    if channel_id:
        channel = guild.get_channel(int(channel_id))
        if channel is not None:
            return channel
    for name in CHANNEL_NAME_FALLBACKS.get(kind, []):
        channel = discord.utils.get(guild.text_channels, name=name)
        if channel is not None:
            return channel
    return None


class DiscordNotifier:
    """Renders events as embeds and posts them. Delivery is best effort."""

    def __init__(self, client: discord.Client, fallback_channel_id: int = ANNOUNCE_CHANNEL_ID):
        self.client = client
        self.fallback_channel_id = fallback_channel_id

    def _channel_for(self, context: EventContext):
        guild = self.client.get_guild(int(context.guild_id)) if context.guild_id else None
        channel = resolve_channel(context.channels, context.kind.value, guild)
        if channel is None and self.fallback_channel_id:
            channel = self.client.get_channel(self.fallback_channel_id)
        return channel

    async def notify(self, event: Event, context: EventContext) -> None:
        channel = self._channel_for(context)
        if channel is None:
            logger.warning("[NOTIFY] No channel for %s %s of %s", context.kind.value, event.name, context.clan_tag)
            return
        await channel.send(embed=build_event_embed(event, context))
