"""Resolution of the effective server policy."""

from __future__ import annotations

from typing import TYPE_CHECKING

from trialgate.storage.repositories import PolicyRecord

if TYPE_CHECKING:
    from trialgate.config import PolicyConfig
    from trialgate.storage.repositories import PolicyStore


def default_policy(defaults: PolicyConfig) -> PolicyRecord:
    return PolicyRecord(
        latest_version=defaults.latest_version,
        trial_days=defaults.trial_days,
        token_expiry_days=defaults.token_expiry_days,
        server_message=defaults.server_message,
        force_update_below_version=defaults.force_update_below_version,
    )


async def load_policy(store: PolicyStore, defaults: PolicyConfig) -> PolicyRecord:
    """The stored policy record, or the configured defaults if none was saved."""
    record = await store.get()
    return record if record is not None else default_policy(defaults)
