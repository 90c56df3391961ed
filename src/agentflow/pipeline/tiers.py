"""Changeset tier classification.

A changeset is small when it fits both small thresholds, medium when it
fits both medium thresholds, and large otherwise. Thresholds are inclusive
and come from the `tiers` section of the pipeline config. A request-level
tier override always wins.
"""

from typing import List, Optional

from agentflow.config import TierConfig, TiersConfig
from agentflow.models import DiffStats, Tier


def _fits(stats: DiffStats, tier_config: TierConfig) -> bool:
    if tier_config.max_files is not None and stats.files_changed > tier_config.max_files:
        return False
    if tier_config.max_lines is not None and stats.lines_changed > tier_config.max_lines:
        return False
    return True


def classify_tier(
    stats: DiffStats,
    tiers: TiersConfig,
    override: Optional[Tier] = None,
) -> Tier:
    """Pick the tier for a changeset.

    Args:
        stats: Diff summary against the base branch.
        tiers: Threshold configuration.
        override: Explicit tier from the request.

    Returns:
        The override if given, otherwise the smallest tier the changeset fits.
    """
    if override is not None:
        return override
    if _fits(stats, tiers.small):
        return Tier.SMALL
    if _fits(stats, tiers.medium):
        return Tier.MEDIUM
    return Tier.LARGE


def agents_for_tier(
    tier: Tier,
    tiers: TiersConfig,
    override: Optional[List[str]] = None,
) -> List[str]:
    """Resolve the agent list: a request-level list wins over tier defaults."""
    if override:
        return list(override)
    return list(tiers.for_tier(tier).agents)
