"""
Cardflow Core
Scheduled Jobs.

Jobs:
    - entropy_sweep: auto-postpones cards idle longer than their entropy period
    - bundle_delivery: emails every notification bundle whose window has ended
"""

from __future__ import annotations

from typing import Any

from cardflow.services import entropy, notification_bundler
from cardflow.services.scheduler_service import register_job


@register_job("entropy_sweep", interval_config_key="ENTROPY_SWEEP_INTERVAL")
def entropy_sweep(app) -> dict[str, Any]:
    """Auto-postpone stale open cards in every account."""
    return entropy.sweep()


@register_job("bundle_delivery", interval_config_key="BUNDLE_DELIVERY_INTERVAL")
def bundle_delivery(app) -> dict[str, Any]:
    """Deliver notification bundles whose window has closed."""
    return notification_bundler.deliver_due()
