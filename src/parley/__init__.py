"""parley: multi-provider conversation orchestration."""

__version__ = "0.3.0"
