"""Package version."""

__version__ = "7.0.0"

# version_info looks like (1, 2, 3, "dev") if __version__ is "1.2.3.dev"
version_info = tuple(int(part) if part.isdigit() else part for part in __version__.split("."))
