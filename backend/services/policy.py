"""
Scoring policy. Every threshold, confidence increment and point value used by
the detection and scoring engine lives here so it can be tuned without touching
detection logic.

`load_policy()` applies environment overrides (BUNDLE_POLICY, MIN_CONFIDENCE)
on top of the defaults.
"""
import logging
import os
from dataclasses import dataclass, replace
from enum import Enum

logger = logging.getLogger("rewards.policy")


class BundlePolicy(str, Enum):
    # "split": primary + secondary on one line score as two items (100 + 50)
    # "combined": the same line scores as a single bundle item (150)
    SPLIT = "split"
    COMBINED = "combined"


@dataclass(frozen=True)
class ScoringPolicy:
    # Validity gate
    min_confidence: int = 40

    # Confidence increments per signal
    store_confidence: int = 25
    total_confidence: int = 15
    date_confidence: int = 10
    primary_direct_confidence: int = 50
    primary_fuzzy_confidence: int = 40
    secondary_direct_confidence: int = 30
    secondary_fuzzy_confidence: int = 20

    # Points
    primary_points: int = 100        # per bottle
    secondary_points: int = 50       # per pack
    bundle_points: int = 150         # per bundle, only under BundlePolicy.COMBINED

    # Quantity bounds
    max_primary_quantity: int = 50
    max_secondary_quantity: int = 10

    bundle_policy: BundlePolicy = BundlePolicy.SPLIT


DEFAULT_POLICY = ScoringPolicy()


def load_policy() -> ScoringPolicy:
    """Return the default policy with environment overrides applied."""
    policy = DEFAULT_POLICY

    raw_bundle = os.environ.get("BUNDLE_POLICY", "").strip().lower()
    if raw_bundle:
        try:
            policy = replace(policy, bundle_policy=BundlePolicy(raw_bundle))
        except ValueError:
            logger.warning("Ignoring unknown BUNDLE_POLICY=%r (expected split|combined)", raw_bundle)

    raw_min = os.environ.get("MIN_CONFIDENCE", "").strip()
    if raw_min:
        try:
            policy = replace(policy, min_confidence=int(raw_min))
        except ValueError:
            logger.warning("Ignoring non-integer MIN_CONFIDENCE=%r", raw_min)

    return policy
