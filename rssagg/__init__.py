"""RSS feed aggregator: an HTTP API over users, feeds and posts, with a background scraper."""

__version__ = "0.1.0"