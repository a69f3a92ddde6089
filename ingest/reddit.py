"""Reddit public JSON engagement source (no API key required)."""
import asyncio
from typing import Optional

import requests

from common.errors import UpstreamUnavailable
from common.models import EngagementSignal, MemeAsset
from config.settings import REDDIT_USER_AGENT, REQUEST_TIMEOUT_SECONDS
from ingest.base import BaseEngagementSource

REDDIT_BY_ID_URL = "https://www.reddit.com/by_id/{fullname}.json"


class RedditEngagementSource(BaseEngagementSource):
    def __init__(self, timeout: float = REQUEST_TIMEOUT_SECONDS):
        super().__init__()
        self.timeout = timeout

    async def fetch(self, asset: MemeAsset) -> Optional[EngagementSignal]:
        if not asset.post_id:
            return None
        return await asyncio.to_thread(self._fetch_post, asset.post_id)

    def _fetch_post(self, post_id: str) -> EngagementSignal:
        fullname = post_id if post_id.startswith("t3_") else f"t3_{post_id}"
        try:
            self.logger.info(f"Fetching engagement for {fullname} from Reddit...")
            resp = requests.get(
                REDDIT_BY_ID_URL.format(fullname=fullname),
                headers={"User-Agent": REDDIT_USER_AGENT},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            children = resp.json()["data"]["children"]
            if not children:
                raise ValueError("Empty listing")
            post = children[0]["data"]
            signal = EngagementSignal(
                score=float(post["score"]),
                comment_count=int(post.get("num_comments", 0)),
            )
        except (requests.RequestException, KeyError, IndexError, TypeError, ValueError) as e:
            raise UpstreamUnavailable(f"Reddit failed for {fullname}: {e}") from e
        if not self.validate(signal):
            raise UpstreamUnavailable(f"Reddit returned invalid engagement for {fullname}")
        return signal
