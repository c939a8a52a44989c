"""Track real-estate listings across portals: discovery, change detection and staleness."""

__version__ = "0.1.0"
