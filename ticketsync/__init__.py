"""HubSpot support-ticket sync backend."""

__version__ = "0.1.0"
