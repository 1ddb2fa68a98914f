"""calbridge: delegated Google Calendar access for direct and channel-linked principals."""

__version__ = "0.1.0"
