"""Multi-agent orchestration gateway for an Arabic-language tutoring assistant."""

__version__ = "0.1.0"
