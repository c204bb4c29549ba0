"""Service modules"""
from .lending_service import LendingClient

__all__ = ["LendingClient"]
