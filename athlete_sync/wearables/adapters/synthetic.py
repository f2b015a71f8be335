"""Placeholder sample generator for providers without a real data source.

Values are drawn uniformly from the integer ranges in ``sync_config.yaml``
(``synthetic.fields``), using the same raw vocabulary the bluetooth and
activity-service normalization tables expect.  This is a demo path, not a
production data source.
"""

from __future__ import annotations

import random

from athlete_sync.wearables.base import now_millis
from athlete_sync.wearables.config_loader import SyntheticConfig


def generate_sample(
    config: SyntheticConfig,
    rng: random.Random | None = None,
    timestamp: int | None = None,
) -> dict:
    """Return one plausible raw sample within every configured bound.

    Args:
        config:    Field bounds and activity name pool.
        rng:       Random source; module-level random when omitted.
        timestamp: Epoch millis for the sample; now when omitted.
    """
    rng = rng or random.Random()
    sample: dict = {
        key: rng.randrange(low, high) for key, (low, high) in config.fields.items()
    }
    activities = list(config.activities)
    rng.shuffle(activities)
    sample["activities"] = activities
    sample["timestamp"] = timestamp if timestamp is not None else now_millis()
    return sample
