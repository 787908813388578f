"""Transaction flow orchestration for EVM chains."""

__version__ = "0.1.0"
