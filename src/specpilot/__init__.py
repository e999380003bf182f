"""SpecPilot: unattended execution of markdown task lists through a coding assistant."""

__version__ = "0.1.0"

__all__ = ["__version__"]
