"""Quality-control alert monitor: test deadlines, teflon expiry and alert delivery."""

__version__ = "0.1.0"
