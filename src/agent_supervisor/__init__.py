"""Local process supervisor for autonomous worker teams."""

__version__ = "0.3.0"
