"""Error taxonomy for the meme market core."""


class MemeMarketError(Exception):
    pass


class InvalidArgument(MemeMarketError, ValueError):
    """Bad creation input; surfaced to the caller."""


class NotFound(MemeMarketError, LookupError):
    """No stored record for the requested asset id."""


class UpstreamUnavailable(MemeMarketError):
    """Engagement source or market-history sink failed."""


class TransientStoreFailure(MemeMarketError):
    """Read or write against the key-value store failed."""
