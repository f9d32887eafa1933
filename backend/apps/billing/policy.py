"""
Deployment-level billing policy.

Passed explicitly into the subscription predicates and the engine instead of
being read from process-wide state.
"""

from dataclasses import dataclass

from config.settings.base import settings


@dataclass(frozen=True)
class BillingPolicy:
    """
    Policy switches that change how raw gateway status is interpreted.

    Attributes:
        past_due_is_active: Treat 'past_due' subscriptions as active
    """

    past_due_is_active: bool = False

    @classmethod
    def from_settings(cls) -> "BillingPolicy":
        """Build the policy from environment configuration."""
        return cls(past_due_is_active=settings.BILLING_PAST_DUE_IS_ACTIVE)
