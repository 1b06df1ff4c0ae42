"""Exception taxonomy for tracking, persistence and base calls."""
from typing import Optional


class TrackingError(Exception):
    """Base class for every error raised by the tracking core."""


class TransientFetchError(TrackingError):
    """Network, timeout, rate-limit or server failure. Retried on the next tick."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class EpisodeNotFound(TrackingError):
    """The API says authoritatively that there is no current episode."""


class PersistenceConflict(TrackingError):
    """A record was written by someone else between our read and our write."""


class ReservationError(TrackingError):
    """Base call failure shown to the user who issued the command."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AlreadyReserved(ReservationError):
    def __init__(self, base_number: int, owner_id: str, owner_name: Optional[str] = None):
        who = owner_name or f"<@{owner_id}>"
        super().__init__(f"Base #{base_number} is already called by {who}.")
        self.base_number = base_number
        self.owner_id = owner_id
        self.owner_name = owner_name


class NotOwner(ReservationError):
    def __init__(self, base_number: int, owner_id: str):
        super().__init__(f"Base #{base_number} was called by <@{owner_id}>, only they can remove it.")
        self.base_number = base_number
        self.owner_id = owner_id


class ReservationNotFound(ReservationError):
    def __init__(self, base_number: int):
        super().__init__(f"Base #{base_number} has no open call.")
        self.base_number = base_number


class NoActiveWar(ReservationError):
    def __init__(self, clan_tag: str):
        super().__init__(f"There is no active war for {clan_tag} to call bases in.")
        self.clan_tag = clan_tag


class InvalidBaseNumber(ReservationError):
    def __init__(self, base_number: int, team_size: int):
        super().__init__(f"Invalid base number {base_number}. Valid range: 1-{team_size}.")
        self.base_number = base_number
        self.team_size = team_size
