"""Discord embed builders for tracking events and status views."""
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import discord

from calculations import CANCELLED, LOSE, TIE, WIN
from config import KIND_COLORS
from timeutils import next_raid_weekend
from models import (
    AttackRecorded, EpisodeEnded, EpisodeStarted, Event, MilestoneCrossed, Phase,
    PhaseChanged, Reservation, TrackingKind, TrackingRecord, UpgradeCompleted,
)

OUTCOME_LABELS = {
    WIN: "🏆 Victory",
    LOSE: "💀 Defeat",
    TIE: "🤝 Tie",
    CANCELLED: "🚫 Cancelled",
}

KIND_LABELS = {
    TrackingKind.WAR: "War",
    TrackingKind.CWL: "CWL",
    TrackingKind.CAPITAL: "Raid Weekend",
}

NO_DATA_MESSAGE = "No data available yet, try again later."

BOLD_CAPS_START = 0x1D400


def _bold_upper(text: str) -> str:
    """Convert ASCII letters to mathematical bold uppercase for a headline effect."""
    out = []
    for ch in (text or "").upper():
        if 'A' <= ch <= 'Z':
            out.append(chr(BOLD_CAPS_START + (ord(ch) - ord('A'))))
        else:
            out.append(ch)
    return ''.join(out)


def _stars(n: int) -> str:
    return "⭐" * n if n else "0⭐"


def _base_embed(kind: TrackingKind, title: str, description: Optional[str] = None) -> discord.Embed:
    embed = discord.Embed(
        title=title,
        description=description,
        color=KIND_COLORS.get(kind.value, 0x95a5a6),
        timestamp=datetime.now(timezone.utc)
    )
    embed.set_footer(text=f"Clash Tracker • {KIND_LABELS[kind]}")
    return embed


def _score_line(record: TrackingRecord) -> str:
    return (
        f"{record.clan_stars}⭐ {record.clan_destruction:.2f}% — "
        f"{record.opponent_stars}⭐ {record.opponent_destruction:.2f}%"
    )


# ============================
# EVENT EMBEDS
# ============================

def _started_embed(event: EpisodeStarted, context) -> discord.Embed:
    if context.kind == TrackingKind.CAPITAL:
        return _base_embed(context.kind, f"🏰 RAID WEEKEND STARTED — {context.clan_name}",
                           "Raid weekend is open. Use all your attacks!")
    if event.day is not None:
        return _base_embed(context.kind, f"⚔️ CWL DAY {event.day} — {context.clan_name}",
                           f"vs **{context.opponent_name or 'Unknown'}** ({event.phase})")
    if context.kind == TrackingKind.CWL:
        return _base_embed(context.kind, f"🛡 CWL SEASON STARTED — {context.clan_name}",
                           "League week has begun.")
    embed = _base_embed(context.kind, f"⚔️ NEW WAR — {context.clan_name}",
                        f"vs **{context.opponent_name or 'Unknown'}**")
    embed.add_field(name="Phase", value=event.phase.title(), inline=True)
    if context.record is not None and context.record.team_size:
        embed.add_field(name="Size", value=f"{context.record.team_size}v{context.record.team_size}", inline=True)
    return embed


def _phase_embed(event: PhaseChanged, context) -> discord.Embed:
    if event.to_phase == Phase.BATTLE:
        title = f"🔥 BATTLE DAY — {context.clan_name}"
    else:
        title = f"🔄 {event.to_phase.upper()} — {context.clan_name}"
    embed = _base_embed(context.kind, title, f"vs **{context.opponent_name or 'Unknown'}**")
    embed.add_field(name="Phase", value=f"{event.from_phase.title()} → {event.to_phase.title()}", inline=False)
    return embed


def _attack_embed(event: AttackRecorded, context) -> discord.Embed:
    attack = event.attack
    target = f"#{attack.base_number} {attack.defender_name}".strip() if attack.base_number else attack.defender_tag
    embed = _base_embed(
        context.kind,
        f"⚔️ WAR HIT — {attack.attacker_name or attack.attacker_tag}",
        f"{_stars(attack.stars)} • {attack.destruction_percentage:.0f}% on **{target}**",
    )
    if attack.day is not None:
        embed.add_field(name="Day", value=str(attack.day), inline=True)
    if context.record is not None and context.kind == TrackingKind.WAR:
        embed.add_field(name="Score", value=_score_line(context.record), inline=False)
    return embed


def _upgrade_embed(event: UpgradeCompleted, context) -> discord.Embed:
    return _base_embed(context.kind, f"🏗 UPGRADE COMPLETE — {context.clan_name}",
                       f"**{event.entity}** is now level **{event.new_level}**")


def _milestone_embed(event: MilestoneCrossed, context) -> discord.Embed:
    return _base_embed(context.kind, f"💰 RAID MILESTONE — {context.clan_name}",
                       f"**{event.value:,}** capital gold looted this weekend!")


def _ended_embed(event: EpisodeEnded, context) -> discord.Embed:
    summary = event.summary or {}
    if context.kind == TrackingKind.CAPITAL:
        embed = _base_embed(context.kind, f"🏁 RAID WEEKEND OVER — {context.clan_name}")
        embed.add_field(name="Capital Gold", value=f"{summary.get('total_loot', 0):,}", inline=True)
        embed.add_field(name="Attacks", value=str(summary.get("total_attacks", 0)), inline=True)
        embed.add_field(name="Districts Destroyed", value=str(summary.get("districts_destroyed", 0)), inline=True)
        top = summary.get("top_looters") or []
        if top:
            embed.add_field(name="Top Looters",
                            value="\n".join(f"{t['name']} — {t['loot']:,}" for t in top), inline=False)
        return embed

    label = OUTCOME_LABELS.get(event.outcome, event.outcome.title())
    if event.day is not None:
        embed = _base_embed(context.kind, f"🏁 CWL DAY {event.day} — {label}",
                            f"vs **{summary.get('opponent_name') or 'Unknown'}**")
        embed.add_field(name="Score",
                        value=f"{summary.get('stars', 0)}⭐ — {summary.get('opponent_stars', 0)}⭐", inline=False)
        return embed

    if context.kind == TrackingKind.CWL:
        embed = _base_embed(context.kind, f"🏁 CWL SEASON OVER — {context.clan_name}")
        if summary:
            embed.add_field(name="Record",
                            value=f"{summary['wins']}W / {summary['losses']}L / {summary['ties']}T", inline=True)
            embed.add_field(name="Stars", value=str(summary["stars"]), inline=True)
            embed.add_field(name="Estimated Position", value=f"#{summary['position']}", inline=True)
            embed.add_field(name="Estimated Medals",
                            value=f"{summary['medals']} ({summary.get('league') or 'Unknown league'})", inline=False)
        return embed

    embed = _base_embed(context.kind, f"🏁 WAR OVER — {label}",
                        f"{context.clan_name} vs **{summary.get('opponent_name') or context.opponent_name or 'Unknown'}**")
    embed.add_field(
        name="Final Score",
        value=(
            f"{summary.get('clan_stars', 0)}⭐ {summary.get('clan_destruction', 0):.2f}% — "
            f"{summary.get('opponent_stars', 0)}⭐ {summary.get('opponent_destruction', 0):.2f}%"
        ),
        inline=False
    )
    top = summary.get("best_attack")
    if top:
        embed.add_field(
            name="Best Attack",
            value=f"{top['attacker_name']} on #{top['base_number']}: {top['stars']}⭐ {top['destruction_percentage']:.0f}%",
            inline=False
        )
    return embed


EVENT_BUILDERS = {
    EpisodeStarted: _started_embed,
    PhaseChanged: _phase_embed,
    AttackRecorded: _attack_embed,
    UpgradeCompleted: _upgrade_embed,
    MilestoneCrossed: _milestone_embed,
    EpisodeEnded: _ended_embed,
}


def build_event_embed(event: Event, context) -> discord.Embed:
    """Render one tracking event. ``context`` is the notifier's EventContext."""
    builder = EVENT_BUILDERS.get(type(event))
    if builder is None:
        return _base_embed(context.kind, f"{event.name} — {context.clan_name}")
    return builder(event, context)


# ============================
# STATUS EMBEDS
# ============================

def build_no_data_embed(kind: TrackingKind, clan_name: str) -> discord.Embed:
    return _base_embed(kind, f"{KIND_LABELS[kind]} — {clan_name}", NO_DATA_MESSAGE)


def build_war_status_embed(record: TrackingRecord) -> discord.Embed:
    embed = _base_embed(
        TrackingKind.WAR,
        f"⚔️ {_bold_upper(record.clan_name or record.clan_tag)} vs {record.opponent_name or 'Unknown'}",
        f"Phase: **{record.phase.title()}**",
    )
    embed.add_field(name="Score", value=_score_line(record), inline=False)
    used = sum(m.attacks_used for m in record.members)
    embed.add_field(name="Attacks", value=f"{used} used", inline=True)
    missing = [m.name or m.tag for m in sorted(record.members, key=lambda m: m.map_position) if m.attacks_used == 0]
    if missing and record.phase == Phase.BATTLE:
        embed.add_field(name="Not attacked yet", value=", ".join(missing)[:1024], inline=False)
    return embed


def build_calls_embed(record: TrackingRecord, reservations: List[Reservation]) -> discord.Embed:
    embed = _base_embed(TrackingKind.WAR, f"📌 BASE CALLS — {record.clan_name or record.clan_tag}",
                        f"vs **{record.opponent_name or 'Unknown'}**")
    if not reservations:
        embed.add_field(name="Calls", value="No bases called yet. Use `/call`.", inline=False)
        return embed
    lines = []
    for r in reservations:
        who = f"<@{r.owner_id}>"
        if r.fulfilled and r.result is not None:
            status = f"✅ {r.result.stars}⭐ {r.result.destruction_percentage:.0f}%"
        else:
            status = "⏳ open"
        note = f" — {r.note}" if r.note else ""
        lines.append(f"**#{r.base_number}** {who} {status}{note}")
    embed.add_field(name="Calls", value="\n".join(lines)[:1024], inline=False)
    return embed


def build_cwl_status_embed(record: TrackingRecord) -> discord.Embed:
    extra = record.extra
    embed = _base_embed(TrackingKind.CWL, f"🛡 CWL {extra.get('season', '')} — {record.clan_name or record.clan_tag}",
                        f"League: **{extra.get('league') or 'Unknown'}**")
    lines = []
    for d in extra.get("days", []):
        result = OUTCOME_LABELS.get(d.get("outcome"), (d.get("state") or "").title())
        lines.append(f"Day {d['day']}: vs {d.get('opponent_name') or d.get('opponent_tag')} — "
                     f"{d.get('stars', 0)}⭐ : {d.get('opponent_stars', 0)}⭐ {result}")
    embed.add_field(name="Days", value="\n".join(lines) or "No rounds drawn yet.", inline=False)
    embed.add_field(name="Total Stars", value=str(record.clan_stars), inline=True)
    return embed


def build_capital_status_embed(record: TrackingRecord) -> discord.Embed:
    extra = record.extra
    raid: Dict[str, Any] = extra.get("raid") or {}
    embed = _base_embed(TrackingKind.CAPITAL, f"🏰 CLAN CAPITAL — {record.clan_name or record.clan_tag}",
                        f"Capital Hall **{extra.get('capital_hall_level', 0)}**")
    districts = extra.get("districts") or {}
    if districts:
        embed.add_field(name="Districts",
                        value="\n".join(f"{name}: {level}" for name, level in sorted(districts.items())),
                        inline=False)
    embed.add_field(name="Capital Gold", value=f"{raid.get('total_loot', 0):,}", inline=True)
    embed.add_field(name="Attacks", value=str(raid.get("total_attacks", 0)), inline=True)
    embed.add_field(name="Raids Completed", value=str(raid.get("raids_completed", 0)), inline=True)
    history = extra.get("raid_history") or []
    if history:
        embed.add_field(
            name="Recent Weekends",
            value="\n".join(f"{(h.get('window_start') or '')[:10]}: {h.get('total_loot', 0):,}" for h in history[-5:]),
            inline=False
        )
    if not record.is_active:
        next_start = next_raid_weekend(datetime.now(timezone.utc))
        embed.add_field(name="Next Raid Weekend", value=f"<t:{int(next_start.timestamp())}:R>", inline=False)
    return embed


def build_war_history_embed(clan_name: str, records: List[TrackingRecord]) -> discord.Embed:
    """Finished wars, newest first."""
    embed = _base_embed(TrackingKind.WAR, f"📜 WAR HISTORY — {clan_name}")
    if not records:
        embed.description = "No finished wars recorded yet."
        return embed
    wins = sum(1 for r in records if r.outcome == WIN)
    losses = sum(1 for r in records if r.outcome == LOSE)
    lines = []
    for r in records:
        label = OUTCOME_LABELS.get(r.outcome or "", (r.outcome or "?").title())
        when = (r.end_time or r.start_time or "")[:10]
        lines.append(f"`{when}` vs **{r.opponent_name or 'Unknown'}** {r.clan_stars}⭐ — {r.opponent_stars}⭐ {label}")
    embed.description = f"Last {len(records)}: {wins}W / {losses}L"
    embed.add_field(name="Wars", value="\n".join(lines)[:1024], inline=False)
    return embed
