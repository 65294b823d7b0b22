"""together: run several shell commands as one supervised session."""

__version__ = "0.4.0"
