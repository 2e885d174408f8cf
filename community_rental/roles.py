from enum import Enum


class Role(str, Enum):
    USER = "USER"
    RENTAL = "RENTAL"
    ADMIN = "ADMIN"


TEAM_ROLES = frozenset({Role.RENTAL, Role.ADMIN})


def has_team_capability(role) -> bool:
    """Return True if ``role`` may approve, decline and hand out bookings."""
    try:
        return Role(role) in TEAM_ROLES
    except ValueError:
        return False


def is_admin(role) -> bool:
    """Return True if ``role`` sees every item, not only the ones it looks after."""
    try:
        return Role(role) == Role.ADMIN
    except ValueError:
        return False
