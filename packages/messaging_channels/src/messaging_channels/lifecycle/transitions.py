"""
Instance status transition rules.

disconnected -> connecting -> connected is the happy path. suspended and
maintenance are administrative overrides that only an administrative
transition can leave.
"""

from messaging_channels.persistence.models import ChannelStatus

ADMINISTRATIVE_STATUSES = frozenset({ChannelStatus.SUSPENDED, ChannelStatus.MAINTENANCE})

ALLOWED_TRANSITIONS: dict[ChannelStatus, frozenset[ChannelStatus]] = {
    ChannelStatus.DISCONNECTED: frozenset({ChannelStatus.CONNECTING}) | ADMINISTRATIVE_STATUSES,
    ChannelStatus.CONNECTING: frozenset(
        {ChannelStatus.CONNECTED, ChannelStatus.ERROR, ChannelStatus.DISCONNECTED}
    )
    | ADMINISTRATIVE_STATUSES,
    ChannelStatus.CONNECTED: frozenset({ChannelStatus.DISCONNECTED, ChannelStatus.ERROR})
    | ADMINISTRATIVE_STATUSES,
    ChannelStatus.ERROR: frozenset({ChannelStatus.CONNECTING, ChannelStatus.DISCONNECTED})
    | ADMINISTRATIVE_STATUSES,
    ChannelStatus.SUSPENDED: frozenset(),
    ChannelStatus.MAINTENANCE: frozenset(),
}


def can_transition(current: ChannelStatus, target: ChannelStatus) -> bool:
    """Whether an automatic writer may move an instance from current to target."""
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS[current]


def can_reconcile(current: ChannelStatus, target: ChannelStatus) -> bool:
    """
    Whether an upstream-reported status may overwrite the stored one.

    Upstream is authoritative for connectivity, with two exceptions: a
    connecting instance is not regressed to disconnected (the code has not
    been scanned yet), and administrative statuses are never touched.
    """
    if current in ADMINISTRATIVE_STATUSES or target in ADMINISTRATIVE_STATUSES:
        return False
    if current == ChannelStatus.CONNECTING and target == ChannelStatus.DISCONNECTED:
        return False
    return True
