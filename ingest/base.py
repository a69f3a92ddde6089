"""Base engagement source abstract class."""
from abc import ABC, abstractmethod
from typing import Optional

from common.logger import get_logger
from common.models import EngagementSignal, MemeAsset


class BaseEngagementSource(ABC):
    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    @abstractmethod
    async def fetch(self, asset: MemeAsset) -> Optional[EngagementSignal]:
        """Return the current engagement signal for *asset*.

        Returns None when the asset has nothing to observe (no linked post).
        Raises UpstreamUnavailable when the source cannot be reached.
        """
        pass

    def validate(self, signal: EngagementSignal) -> bool:
        return signal.comment_count >= 0
