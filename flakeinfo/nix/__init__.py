"""Adapters for the external evaluation engine."""

from .evaluator import NixEvaluator, default_program
from .metadata import MetadataFetcher, parse_metadata

__all__ = ["MetadataFetcher", "NixEvaluator", "default_program", "parse_metadata"]
