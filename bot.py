"""
Discord bot that tracks Clash of Clans wars, CWL seasons and raid weekends.

- Reconciler polls the API per clan and kind and posts new events
- Base calls (/call, /uncall, /calls) live on the active war record
- Tracking records are kept in SQLite, the clan registry in JSON
"""
import logging
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone

import discord
from discord import app_commands
import aiohttp

from config import DISCORD_TOKEN, COC_API_KEYS, DATABASE_PATH, LOG_FILE, LOG_LEVEL
from storage import (
    load_clans, add_clan, remove_clan, set_clan_channel, link_user,
    get_linked_tag_for_user, normalize_tag
)
from coc_api import COCAPI
from embeds import (
    build_calls_embed, build_capital_status_embed, build_cwl_status_embed,
    build_no_data_embed, build_war_history_embed, build_war_status_embed
)
from errors import EpisodeNotFound, ReservationError, TransientFetchError
from models import TrackingKind
from notifier import DiscordNotifier
from reconciler import Reconciler
from scheduler import TrackingScheduler
from tracking_store import TrackingStore

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(LOG_FILE)
    ]
)
logger = logging.getLogger(__name__)


# ============================
# DISCORD CLIENT
# ============================
intents = discord.Intents.default()
intents.guilds = True


class ClashBot(discord.Client):
    """Main Discord bot client."""

    def __init__(self, *, intents: discord.Intents):
        super().__init__(intents=intents)
        self.tree = app_commands.CommandTree(self)
        self.http_session: Optional[aiohttp.ClientSession] = None
        self.coc_api: Optional[COCAPI] = None
        self.store = TrackingStore(DATABASE_PATH)
        self.reconciler: Optional[Reconciler] = None
        self.scheduler: Optional[TrackingScheduler] = None
        self.clans: List[Dict[str, Any]] = load_clans()
        self._tasks_started = False

    async def setup_hook(self):
        """Called when bot is starting up."""
        self.http_session = aiohttp.ClientSession()
        self.coc_api = COCAPI(self.http_session)
        await self.store.initialize()
        self.reconciler = Reconciler(self.coc_api, self.store, DiscordNotifier(self))
        self.scheduler = TrackingScheduler(self.reconciler, lambda: self.clans)

    async def close(self):
        """Cleanup on shutdown."""
        if self.scheduler:
            await self.scheduler.stop()
        if self.http_session:
            await self.http_session.close()
        await super().close()


client = ClashBot(intents=intents)


# ============================
# CLAN MANAGEMENT
# ============================
def get_clan_by_tag(tag: str) -> Optional[Dict[str, Any]]:
    """Find clan by tag in monitored list."""
    tag_norm = normalize_tag(tag)
    for c in client.clans:
        if c["tag"] == tag_norm:
            return c
    return None


async def clan_autocomplete(
    interaction: discord.Interaction,
    current: str,
) -> List[app_commands.Choice[str]]:
    """Autocomplete for clan selection."""
    current_lower = current.lower()
    options: List[app_commands.Choice[str]] = []
    for c in client.clans:
        label = f"{c['name']} ({c['tag']})"
        if current_lower in label.lower():
            options.append(app_commands.Choice(name=label, value=c["tag"]))
    return options[:25]


KIND_CHOICES = [
    app_commands.Choice(name="War", value=TrackingKind.WAR.value),
    app_commands.Choice(name="CWL", value=TrackingKind.CWL.value),
    app_commands.Choice(name="Clan Capital", value=TrackingKind.CAPITAL.value),
]


# ============================
# SLASH COMMANDS
# ============================
@client.tree.command(name="link", description="Link your Discord account to a Clash player tag.")
@app_commands.describe(tag="Your player tag (example: #2PQUE2J)")
async def link(interaction: discord.Interaction, tag: str):
    """Link Discord account to Clash player tag."""
    tag_norm = link_user(tag, interaction.user.id)

    emb = discord.Embed(
        title="Account Linked ✅",
        color=0x2ecc71,
        timestamp=datetime.now(timezone.utc)
    )
    emb.add_field(name="Discord User", value=f"{interaction.user.mention}", inline=True)
    emb.add_field(name="Player Tag", value=f"`{tag_norm}`", inline=True)
    emb.set_footer(text="Your base calls will show this account.")
    await interaction.response.send_message(embed=emb, ephemeral=True)


@client.tree.command(name="addclan", description="Add a new clan to the monitored list.")
@app_commands.describe(name="Clan name (any label you want)", tag="Clan tag (example: #PQUCURCQ)")
async def addclan(interaction: discord.Interaction, name: str, tag: str):
    """Add a clan to monitoring."""
    await interaction.response.send_message("➕ Adding clan...", ephemeral=True)
    tag_norm = normalize_tag(tag)

    if get_clan_by_tag(tag_norm):
        await interaction.edit_original_response(
            content=f"❌ Clan with tag `{tag_norm}` is already in the list."
        )
        return

    # Validate clan exists
    try:
        clan_data = await client.coc_api.get_clan(tag_norm)
    except EpisodeNotFound:
        await interaction.edit_original_response(content=f"❌ No clan with tag `{tag_norm}` exists.")
        return
    except TransientFetchError:
        await interaction.edit_original_response(
            content=f"❌ Could not validate clan tag `{tag_norm}` via API, try again later."
        )
        return

    display_name = name.strip() or clan_data.get("name") or "Unnamed Clan"
    add_clan(display_name, tag_norm, str(interaction.guild_id or ""))
    client.clans = load_clans()

    await interaction.edit_original_response(
        content=f"✅ Added clan **{display_name}** (`{tag_norm}`) and started tracking."
    )


@client.tree.command(name="removeclan", description="Remove a clan from monitored list")
@app_commands.describe(clan="Select the clan to remove", purge="Also delete its stored war, CWL and capital history")
@app_commands.autocomplete(clan=clan_autocomplete)
async def removeclan(interaction: discord.Interaction, clan: str, purge: bool = False):
    """Remove a clan from monitoring. Its stored records stay for history unless purged."""
    c_obj = get_clan_by_tag(clan)
    if not c_obj:
        await interaction.response.send_message("❌ Clan not found in monitored list.", ephemeral=True)
        return

    remove_clan(c_obj["tag"])
    client.clans = load_clans()
    if client.coc_api:
        client.coc_api.invalidate_clan_cache(c_obj["tag"])
    if purge:
        await client.store.clear_clan(c_obj["tag"])
        for kind in TrackingKind:
            client.reconciler.records.forget(c_obj["tag"], kind)
        logger.info("[INFO] Purged stored records for %s", c_obj["tag"])
    await interaction.response.send_message(
        f"✅ Removed clan **{c_obj['name']}** (`{c_obj['tag']}`) from monitored list and stopped tracking."
        + (" Stored history was deleted." if purge else ""),
        ephemeral=True
    )


@client.tree.command(name="setchannel", description="Post one kind of tracking update for a clan in a channel")
@app_commands.describe(clan="Clan", kind="Which updates", channel="Target channel")
@app_commands.autocomplete(clan=clan_autocomplete)
@app_commands.choices(kind=KIND_CHOICES)
async def setchannel(interaction: discord.Interaction, clan: str, kind: app_commands.Choice[str],
                     channel: discord.TextChannel):
    c_obj = get_clan_by_tag(clan)
    if not c_obj or not set_clan_channel(c_obj["tag"], kind.value, channel.id):
        await interaction.response.send_message("❌ Clan not found in monitored list.", ephemeral=True)
        return
    client.clans = load_clans()
    await interaction.response.send_message(
        f"✅ {kind.name} updates for **{c_obj['name']}** will go to {channel.mention}.", ephemeral=True
    )


async def _resolve_clan(interaction: discord.Interaction, clan: Optional[str]) -> Optional[Dict[str, Any]]:
    """Chosen clan, or the only/first clan registered for this server."""
    if clan:
        c_obj = get_clan_by_tag(clan)
    else:
        guild_id = str(interaction.guild_id or "")
        c_obj = next((c for c in client.clans if c["guild_id"] == guild_id), None)
    if c_obj is None:
        await interaction.response.send_message("❌ Clan not found in monitored list.", ephemeral=True)
    return c_obj


@client.tree.command(name="war", description="Show the current war")
@app_commands.describe(clan="(Optional) clan; default = first clan of this server")
@app_commands.autocomplete(clan=clan_autocomplete)
async def war(interaction: discord.Interaction, clan: Optional[str] = None):
    c_obj = await _resolve_clan(interaction, clan)
    if c_obj is None:
        return
    record = await client.reconciler.get_active_record(c_obj["tag"], TrackingKind.WAR)
    if record is None:
        await interaction.response.send_message(embed=build_no_data_embed(TrackingKind.WAR, c_obj["name"]))
        return
    await interaction.response.send_message(embed=build_war_status_embed(record))


@client.tree.command(name="warhistory", description="Show the clan's last finished wars")
@app_commands.describe(clan="(Optional) clan", limit="How many wars to show (1-20)")
@app_commands.autocomplete(clan=clan_autocomplete)
async def warhistory(interaction: discord.Interaction, clan: Optional[str] = None,
                     limit: app_commands.Range[int, 1, 20] = 10):
    c_obj = await _resolve_clan(interaction, clan)
    if c_obj is None:
        return
    records = await client.store.history(c_obj["tag"], TrackingKind.WAR, limit)
    if not records:
        await interaction.response.send_message(embed=build_no_data_embed(TrackingKind.WAR, c_obj["name"]))
        return
    await interaction.response.send_message(embed=build_war_history_embed(c_obj["name"], records))


@client.tree.command(name="call", description="Call an enemy base in the current war")
@app_commands.describe(base="Enemy base number", note="(Optional) plan or army", clan="(Optional) clan")
@app_commands.autocomplete(clan=clan_autocomplete)
async def call(interaction: discord.Interaction, base: int, note: Optional[str] = None,
               clan: Optional[str] = None):
    c_obj = await _resolve_clan(interaction, clan)
    if c_obj is None:
        return
    try:
        reservation = await client.reconciler.ledger.call(
            c_obj["tag"], base, str(interaction.user.id), note,
            owner_name=interaction.user.display_name,
            player_tag=get_linked_tag_for_user(interaction.user.id),
        )
    except ReservationError as e:
        await interaction.response.send_message(f"❌ {e.message}", ephemeral=True)
        return
    await interaction.response.send_message(
        f"📌 {interaction.user.mention} called base **#{reservation.base_number}**"
        + (f" — {reservation.note}" if reservation.note else "")
    )


@client.tree.command(name="uncall", description="Remove your call on an enemy base")
@app_commands.describe(base="Enemy base number", clan="(Optional) clan")
@app_commands.autocomplete(clan=clan_autocomplete)
async def uncall(interaction: discord.Interaction, base: int, clan: Optional[str] = None):
    c_obj = await _resolve_clan(interaction, clan)
    if c_obj is None:
        return
    try:
        await client.reconciler.ledger.uncall(c_obj["tag"], base, str(interaction.user.id))
    except ReservationError as e:
        await interaction.response.send_message(f"❌ {e.message}", ephemeral=True)
        return
    await interaction.response.send_message(f"🗑 {interaction.user.mention} removed the call on base **#{base}**")


@client.tree.command(name="calls", description="List base calls for the current war")
@app_commands.describe(clan="(Optional) clan")
@app_commands.autocomplete(clan=clan_autocomplete)
async def calls(interaction: discord.Interaction, clan: Optional[str] = None):
    c_obj = await _resolve_clan(interaction, clan)
    if c_obj is None:
        return
    record = await client.reconciler.get_active_record(c_obj["tag"], TrackingKind.WAR)
    if record is None:
        await interaction.response.send_message(embed=build_no_data_embed(TrackingKind.WAR, c_obj["name"]))
        return
    reservations = await client.reconciler.ledger.list_reservations(c_obj["tag"])
    await interaction.response.send_message(embed=build_calls_embed(record, reservations))


@client.tree.command(name="cwl", description="Show the current Clan War League season")
@app_commands.describe(clan="(Optional) clan")
@app_commands.autocomplete(clan=clan_autocomplete)
async def cwl(interaction: discord.Interaction, clan: Optional[str] = None):
    c_obj = await _resolve_clan(interaction, clan)
    if c_obj is None:
        return
    record = await client.reconciler.get_active_record(c_obj["tag"], TrackingKind.CWL)
    if record is None:
        await interaction.response.send_message(embed=build_no_data_embed(TrackingKind.CWL, c_obj["name"]))
        return
    await interaction.response.send_message(embed=build_cwl_status_embed(record))


@client.tree.command(name="capital", description="Show clan capital districts and the current raid weekend")
@app_commands.describe(clan="(Optional) clan")
@app_commands.autocomplete(clan=clan_autocomplete)
async def capital(interaction: discord.Interaction, clan: Optional[str] = None):
    c_obj = await _resolve_clan(interaction, clan)
    if c_obj is None:
        return
    record = await client.reconciler.get_active_record(c_obj["tag"], TrackingKind.CAPITAL)
    if record is None:
        # Between weekends the last finished record still has the district levels
        record = await client.store.get_latest(c_obj["tag"], TrackingKind.CAPITAL)
    if record is None:
        await interaction.response.send_message(embed=build_no_data_embed(TrackingKind.CAPITAL, c_obj["name"]))
        return
    await interaction.response.send_message(embed=build_capital_status_embed(record))


@client.tree.command(name="synccommands", description="Force sync slash commands with Discord")
async def synccommands(interaction: discord.Interaction):
    await interaction.response.send_message("🔄 Syncing...", ephemeral=True)
    try:
        synced = await client.tree.sync()
    except discord.HTTPException as e:
        await interaction.edit_original_response(content=f"❌ Sync failed: {e}")
        return
    await interaction.edit_original_response(content=f"✅ Synced {len(synced)} commands.")


# ============================
# STARTUP
# ============================
@client.event
async def on_ready():
    """Called when bot is ready."""
    logger.info("[READY] %s (id: %s)", client.user, client.user.id)

    try:
        synced = await client.tree.sync()
        logger.info("[INFO] Slash commands synced. %d commands registered.", len(synced))
    except discord.HTTPException as e:
        logger.error("[ERROR] Failed to sync commands: %s", e)

    # on_ready fires again after reconnects
    if not client._tasks_started:
        client._tasks_started = True
        await client.scheduler.start()


# ============================
# RUN
# ============================
if __name__ == "__main__":
    if not DISCORD_TOKEN or not COC_API_KEYS:
        logger.critical("[FATAL] Set DISCORD_TOKEN and COC_API_KEY (or COC_API_KEYS) environment variables.")
    else:
        try:
            client.run(DISCORD_TOKEN, log_handler=None)
        except KeyboardInterrupt:
            logger.info("[INFO] Shutting down...")
