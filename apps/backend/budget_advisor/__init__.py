"""Budget advisor: autonomous recommendation agent for budget tracking."""

__version__ = "0.1.0"
