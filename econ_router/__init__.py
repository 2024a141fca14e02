"""Budget-aware routing of inference requests across execution tiers."""

__version__ = "0.1.0"
