"""babylog: caregiving event log with sleep-session correction and analytics."""

__version__ = "1.0.0"
