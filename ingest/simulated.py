"""Simulated engagement source for demos and local runs without a live post."""
import zlib
from typing import Optional

import numpy as np

from common.models import EngagementSignal, MemeAsset
from ingest.base import BaseEngagementSource


class SimulatedEngagementSource(BaseEngagementSource):
    """Random-walk karma per asset, reproducible for a given asset id and seed."""

    def __init__(self, seed: int = 0, drift: float = 4.0, noise: float = 12.0):
        super().__init__()
        self.seed = seed
        self.drift = drift
        self.noise = noise
        self._karma: dict[str, float] = {}
        self._rngs: dict[str, np.random.Generator] = {}

    def _rng(self, asset_id: str) -> np.random.Generator:
        if asset_id not in self._rngs:
            self._rngs[asset_id] = np.random.default_rng(zlib.crc32(asset_id.encode()) + self.seed)
        return self._rngs[asset_id]

    async def fetch(self, asset: MemeAsset) -> Optional[EngagementSignal]:
        rng = self._rng(asset.id)
        karma = self._karma.get(asset.id, 20.0)
        karma = max(0.0, karma + self.drift + rng.normal(0, self.noise))
        self._karma[asset.id] = karma
        comments = int(karma * rng.uniform(0.05, 0.25))
        return EngagementSignal(score=round(karma, 1), comment_count=comments)
