"""llmgate — one async contract over many AI providers."""

__version__ = "0.1.0"
