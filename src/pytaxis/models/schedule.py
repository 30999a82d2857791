"""Scheduling policy attached to a workflow definition."""

from dataclasses import dataclass

KNOWN_POLICIES = ("immediate", "scheduled", "conditional")


@dataclass(frozen=True)
class SchedulePolicy:
    """Opaque scheduling policy.

    The engine stores the policy and hands it back; interpreting it (cron
    expressions, conditions, ...) and calling ``Controller.start`` belongs to
    an external scheduler.

    Attributes:
        policy: Policy name, e.g. "immediate", "scheduled", "conditional"
        data: Policy-specific payload
    """

    policy: str
    data: str = ""

    @property
    def is_known(self) -> bool:
        """True for the conventional policy names."""
        return self.policy in KNOWN_POLICIES

    def to_dict(self) -> dict[str, str]:
        return {"policy": self.policy, "data": self.data}
