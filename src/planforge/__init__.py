"""planforge: validated plan execution for AI-assisted code changes."""

__version__ = "0.1.0"

__all__ = ["__version__"]
