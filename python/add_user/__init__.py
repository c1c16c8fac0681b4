"""Provision Unix accounts with password, group, sudo and SSH key setup."""

__version__ = "1.0.0"
