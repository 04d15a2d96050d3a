"""threadline: streaming multi-turn chat sessions over the Responses API."""

__version__ = "0.1.0"
