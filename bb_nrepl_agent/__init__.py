"""bb-nrepl-agent: let an LLM drive Babashka through one eval tool."""

__version__ = "0.3.0"
