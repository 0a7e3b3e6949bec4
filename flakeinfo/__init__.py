"""flake-info: extract package, app and option metadata from flakes into a search index."""

__version__ = "0.1.0"
