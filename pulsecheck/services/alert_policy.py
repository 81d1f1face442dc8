"""Alert eligibility - the up/down state machine evaluated once per check.

States per monitor: unknown -> up <-> down.
Eligibility only proposes a candidate; owner preferences and the cooldown in
the notification worker decide whether an e-mail actually goes out.
"""
from typing import Optional

ALERT_DOWN = "down"
ALERT_UP = "up"
ALERT_TYPES = (ALERT_DOWN, ALERT_UP)

# Queue job names per alert type
JOB_NAMES = {ALERT_DOWN: "monitor-down", ALERT_UP: "monitor-up"}


def decide_alert(
    previous_status: str,
    new_status: str,
    consecutive_fails: int,
    alert_threshold: int,
) -> Optional[str]:
    """Return the alert type a check outcome is eligible for, if any.

    Args:
        previous_status: monitor status before this check was applied
        new_status: status produced by this check
        consecutive_fails: fail count after this check was applied
        alert_threshold: failures needed before a down alert

    Every failing check at or past the threshold is eligible; repeat sends
    within one incident are held back by the cooldown, not here.
    """
    if new_status == "down":
        if consecutive_fails >= max(alert_threshold, 1):
            return ALERT_DOWN
        return None

    if new_status == "up" and previous_status == "down":
        return ALERT_UP

    return None
