"""ShardTalk: queryable mirror of on-chain chat messages."""

__version__ = "1.0.0"
