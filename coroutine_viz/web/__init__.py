"""Web result preparation."""

from .result_builder import prepare_results

__all__ = ["prepare_results"]
