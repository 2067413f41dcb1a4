"""Configuration package for the MineHub accrual engine."""

from .settings import AppSettings, get_settings

__all__ = ["AppSettings", "get_settings"]
