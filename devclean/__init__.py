"""devclean: find local JavaScript projects, score deletion risk, clean up safely."""

__version__ = "0.1.0"
