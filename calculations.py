"""War outcome, attack ranking and league estimate logic."""
from typing import Any, Dict, Iterable, List, Optional

from config import CWL_LEAGUE_MEDALS, DEFAULT_CWL_LEAGUE
from models import Attack

WIN = "win"
LOSE = "lose"
TIE = "tie"
CANCELLED = "cancelled"


def war_outcome(clan_stars: int, clan_destruction: float,
                opponent_stars: int, opponent_destruction: float) -> str:
    """Stars decide, destruction breaks a star tie, otherwise it is a tie."""
    if clan_stars != opponent_stars:
        return WIN if clan_stars > opponent_stars else LOSE
    if clan_destruction != opponent_destruction:
        return WIN if clan_destruction > opponent_destruction else LOSE
    return TIE


def best_attack(attacks: Iterable[Attack]) -> Optional[Attack]:
    """Highest ranked attack by (stars desc, destruction desc)."""
    best = None
    for attack in attacks:
        if best is None or attack.result.beats(best.result):
            best = attack
    return best


def estimate_cwl_position(wins: int) -> int:
    """
    Rough final position from war wins.

    The API does not report league placement, so 7 wins maps to 1st and
    0 wins to 8th.
    """
    wins = max(0, min(7, wins))
    return 8 - wins


def estimate_cwl_medals(league: Optional[str], position: int) -> int:
    table = CWL_LEAGUE_MEDALS.get(league or "") or CWL_LEAGUE_MEDALS[DEFAULT_CWL_LEAGUE]
    if position < 1 or position > len(table):
        return 0
    return table[position - 1]


def summarize_cwl_season(days: List[Dict[str, Any]], league: Optional[str]) -> Dict[str, Any]:
    """Totals for a finished CWL season from the per-day entries of a record."""
    wins = sum(1 for d in days if d.get("outcome") == WIN)
    losses = sum(1 for d in days if d.get("outcome") == LOSE)
    ties = sum(1 for d in days if d.get("outcome") == TIE)
    position = estimate_cwl_position(wins)
    return {
        "wins": wins,
        "losses": losses,
        "ties": ties,
        "stars": sum(int(d.get("stars") or 0) for d in days),
        "position": position,
        "medals": estimate_cwl_medals(league, position),
        "league": league,
    }


def crossed_milestones(total: int, already_reached: Iterable[int], milestones: Iterable[int]) -> List[int]:
    """Milestones at or below ``total`` that have not been announced yet, ascending."""
    reached = set(already_reached)
    return sorted(m for m in milestones if total >= m and m not in reached)
